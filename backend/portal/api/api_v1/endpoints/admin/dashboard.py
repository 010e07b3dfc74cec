"""管理端首页统计"""

from datetime import datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.deps import AdminContext, get_db, require_admin
from portal.models.catalog import DEFAULT_REORDER_POINT, Inventory, Product
from portal.models.merchant import KybStatus, Merchant
from portal.models.order import Order, OrderStatus
from portal.models.system import AuditEvent
from portal.models.wallet import WithdrawalRequest, WithdrawalStatus

router = APIRouter()


async def _count(db: AsyncSession, query) -> int:
    return (await db.execute(query)).scalar() or 0


async def _revenue_since(db: AsyncSession, since: datetime) -> int:
    return await _count(db, select(func.coalesce(func.sum(Order.actual_total_cents), 0)).where(
        Order.shipped_at >= since,
        Order.status.in_((OrderStatus.SHIPPED, OrderStatus.COMPLETE)),
    ))


@router.get("")
async def get_dashboard(
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    now = datetime.utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    available = func.coalesce(Inventory.on_hand, 0) - func.coalesce(Inventory.reserved, 0)
    low_stock = await _count(db, select(func.count(Product.id))
        .outerjoin(Inventory, Inventory.product_id == Product.id)
        .where(Product.active.is_(True), available <= func.coalesce(Inventory.reorder_point, DEFAULT_REORDER_POINT)))

    pending = (await db.execute(
        select(Merchant).where(Merchant.kyb_status.in_(KybStatus.PENDING_REVIEW))
        .order_by(Merchant.created_at.desc()).limit(5)
    )).scalars().all()
    activity = (await db.execute(
        select(AuditEvent).order_by(AuditEvent.created_at.desc()).limit(10)
    )).scalars().all()

    return {
        "data": {
            "totalMerchants": await _count(db, select(func.count(Merchant.id))),
            "pendingKyb": await _count(db, select(func.count(Merchant.id)).where(Merchant.kyb_status.in_(KybStatus.PENDING_REVIEW))),
            "activeOrders": await _count(db, select(func.count(Order.id)).where(Order.status.notin_(OrderStatus.CLOSED))),
            "awaitingFunds": await _count(db, select(func.count(Order.id)).where(Order.status == OrderStatus.AWAITING_FUNDS)),
            "pendingWithdrawals": await _count(db, select(func.count(WithdrawalRequest.id)).where(
                WithdrawalRequest.status.notin_(WithdrawalStatus.FINAL))),
            "lowStockProducts": low_stock,
            "revenueToday": await _revenue_since(db, today),
            "revenueThisWeek": await _revenue_since(db, today - timedelta(days=today.weekday())),
            "pendingReviews": [
                {
                    "id": m.id,
                    "company": m.display_name,
                    "type": "KYB Review" if m.kyb_status == KybStatus.IN_PROGRESS else "Pending Start",
                    "submittedAt": m.created_at,
                }
                for m in pending
            ],
            "recentActivity": [
                {
                    "id": a.id,
                    "type": a.action,
                    "entity": f"{a.entity_type}:{a.entity_id}",
                    "time": a.created_at,
                    "metadata": a.extra_data,
                }
                for a in activity
            ],
        }
    }
