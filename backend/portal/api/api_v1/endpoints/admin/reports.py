"""
经营报表

- 区间内按发货日汇总收入
- 订单状态分布
- 销量靠前商品
- 钱包余额合计
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.deps import AdminContext, get_db, require_admin
from portal.models.merchant import Merchant, MerchantStatus
from portal.models.order import Order, OrderItem, OrderStatus
from portal.models.wallet import WalletAccount

router = APIRouter()

# 计入收入的状态
REVENUE_STATUSES = (OrderStatus.SHIPPED, OrderStatus.COMPLETE)


@router.get("")
async def get_reports(
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    days: int = Query(30, ge=1, le=365),
    top: int = Query(10, ge=1, le=50),
) -> Any:
    since = datetime.utcnow() - timedelta(days=days)

    shipped = await db.execute(
        select(Order.shipped_at, Order.actual_total_cents).where(
            Order.status.in_(REVENUE_STATUSES),
            Order.shipped_at >= since,
            Order.actual_total_cents.isnot(None),
        )
    )
    daily: Dict[str, int] = defaultdict(int)
    for shipped_at, amount in shipped.all():
        daily[shipped_at.date().isoformat()] += amount or 0
    revenue_by_day = [{"date": day, "amount": daily[day]} for day in sorted(daily)]

    total_revenue = (await db.execute(
        select(func.coalesce(func.sum(Order.actual_total_cents), 0)).where(Order.status.in_(REVENUE_STATUSES))
    )).scalar() or 0

    status_rows = await db.execute(
        select(Order.status, func.count(Order.id)).where(Order.created_at >= since).group_by(Order.status)
    )
    orders_by_status = [{"status": status, "count": count} for status, count in status_rows.all()]

    units = func.sum(OrderItem.qty)
    top_rows = await db.execute(
        select(OrderItem.sku, OrderItem.name, units.label("units"), func.sum(OrderItem.qty * OrderItem.unit_price_cents).label("revenue"))
        .join(Order, Order.id == OrderItem.order_id)
        .where(Order.status.in_(REVENUE_STATUSES), Order.created_at >= since)
        .group_by(OrderItem.sku, OrderItem.name)
        .order_by(units.desc())
        .limit(top)
    )
    top_products = [
        {"sku": sku, "name": name, "units": int(qty or 0), "revenue_cents": int(revenue or 0)}
        for sku, name, qty, revenue in top_rows.all()
    ]

    wallet_row = (await db.execute(
        select(
            func.coalesce(func.sum(WalletAccount.balance_cents), 0),
            func.coalesce(func.sum(WalletAccount.reserved_cents), 0),
        )
    )).one()

    return {
        "data": {
            "periodDays": days,
            "totalRevenue": int(total_revenue),
            "periodRevenue": sum(daily.values()),
            "totalOrders": (await db.execute(select(func.count(Order.id)))).scalar() or 0,
            "activeMerchants": (await db.execute(
                select(func.count(Merchant.id)).where(Merchant.status == MerchantStatus.ACTIVE)
            )).scalar() or 0,
            "revenueByDay": revenue_by_day,
            "ordersByStatus": orders_by_status,
            "topProducts": top_products,
            "walletTotals": {
                "balance_cents": int(wallet_row[0]),
                "reserved_cents": int(wallet_row[1]),
            },
        }
    }
