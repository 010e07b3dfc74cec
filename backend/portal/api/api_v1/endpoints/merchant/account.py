"""商户账户：基本信息、首页概览、资料修改、站内通知"""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from portal.core.deps import MerchantContext, get_db, get_merchant_context, require_merchant_role
from portal.models.billing import COMPLIANCE_RESERVE_CENTS
from portal.models.catalog import MerchantProduct
from portal.models.merchant import MerchantRole
from portal.models.order import Order, OrderStatus
from portal.models.system import Notification
from portal.models.wallet import WalletTransaction, WalletTransactionType
from portal.schemas.merchant import MerchantResponse, ProfileUpdate
from portal.services.audit import client_ip, create_audit_event
from portal.services.wallet import get_wallet, wallet_summary

from ..admin.orders.core import build_order_response

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/me")
async def get_me(context: MerchantContext = Depends(get_merchant_context)) -> Any:
    return {
        "merchant": MerchantResponse.model_validate(context.merchant),
        "user": {"id": context.user.id, "email": context.user.email},
        "role": context.role,
    }


@router.patch("/profile")
async def update_profile(
    *,
    request: Request,
    payload: ProfileUpdate,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(require_merchant_role(MerchantRole.ADMIN)),
) -> Any:
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    merchant = context.merchant
    old_values = {key: getattr(merchant, key) for key in updates}
    for key, value in updates.items():
        setattr(merchant, key, value)
    await create_audit_event(
        db, "merchant.profile_updated", "merchant", merchant.id,
        merchant_id=merchant.id,
        actor_user_id=context.user.id,
        actor_email=context.user.email,
        old_values=old_values,
        new_values=updates,
        ip_address=client_ip(request),
    )
    await db.commit()
    return {"data": MerchantResponse.model_validate(merchant)}


@router.get("/dashboard")
async def get_dashboard(
    *,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(get_merchant_context),
) -> Any:
    """
    商户首页

    - 钱包余额 / 预留 / 可用
    - 进行中订单数、可售商品数
    - 本月结算支出
    - 最近订单
    - 低余额提醒（可用余额扣除合规保证金后低于阈值）
    """
    merchant = context.merchant
    wallet = await get_wallet(db, merchant.id, "USD")
    summary = wallet_summary(wallet)

    active_orders = (await db.execute(
        select(func.count(Order.id)).where(Order.merchant_id == merchant.id, Order.status.notin_(OrderStatus.CLOSED))
    )).scalar() or 0
    product_count = (await db.execute(
        select(func.count(MerchantProduct.id)).where(MerchantProduct.merchant_id == merchant.id, MerchantProduct.allowed.is_(True))
    )).scalar() or 0

    month_start = datetime.utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    settled = (await db.execute(
        select(func.coalesce(func.sum(WalletTransaction.amount_cents), 0)).where(
            WalletTransaction.merchant_id == merchant.id,
            WalletTransaction.type == WalletTransactionType.SETTLEMENT,
            WalletTransaction.created_at >= month_start,
        )
    )).scalar() or 0

    recent = (await db.execute(
        select(Order)
        .options(selectinload(Order.items), selectinload(Order.shipments), selectinload(Order.merchant))
        .where(Order.merchant_id == merchant.id)
        .order_by(Order.created_at.desc())
        .limit(5)
    )).scalars().all()

    threshold = merchant.low_balance_threshold_cents or 0
    spendable = summary["available_cents"] - COMPLIANCE_RESERVE_CENTS
    return {
        "data": {
            "wallet": summary,
            "activeOrders": active_orders,
            "productCount": product_count,
            "monthlySpendCents": abs(int(settled)),
            "recentOrders": [build_order_response(o, include_lines=False) for o in recent],
            "lowBalanceAlert": {
                "active": spendable < threshold,
                "available_cents": spendable,
                "threshold_cents": threshold,
            },
            "kybStatus": merchant.kyb_status,
            "status": merchant.status,
        }
    }


@router.get("/notifications")
async def list_notifications(
    *,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(get_merchant_context),
    unread_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=100),
) -> Any:
    query = select(Notification).where(Notification.merchant_id == context.merchant_id)
    if unread_only:
        query = query.where(Notification.read_at.is_(None))
    rows = (await db.execute(query.order_by(Notification.created_at.desc()).limit(limit))).scalars().all()
    return {
        "data": [
            {
                "id": n.id,
                "type": n.type,
                "title": n.title,
                "message": n.message,
                "metadata": n.extra_data,
                "read_at": n.read_at,
                "created_at": n.created_at,
            }
            for n in rows
        ]
    }


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    *,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(get_merchant_context),
) -> Any:
    notification = await db.get(Notification, notification_id)
    if not notification or notification.merchant_id != context.merchant_id:
        raise HTTPException(status_code=404, detail="Notification not found")
    if not notification.read_at:
        notification.read_at = datetime.utcnow()
        await db.commit()
    return {"success": True}
