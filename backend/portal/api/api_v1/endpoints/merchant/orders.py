"""商户订单：列表、详情、取消"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from portal.core.deps import MerchantContext, get_db, get_merchant_context
from portal.models.order import Order
from portal.schemas.common import build_pagination
from portal.schemas.order import CancelRequest
from portal.services.order_flow import cancel_order

from ..admin.orders.core import build_order_response, get_order_or_404

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def list_orders(
    *,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(get_merchant_context),
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> Any:
    conditions = [Order.merchant_id == context.merchant_id]
    if status:
        conditions.append(Order.status == status)

    total = (await db.execute(select(func.count(Order.id)).where(*conditions))).scalar() or 0
    orders = (await db.execute(
        select(Order)
        .options(selectinload(Order.items), selectinload(Order.shipments), selectinload(Order.merchant))
        .where(*conditions)
        .order_by(Order.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )).scalars().all()

    return {
        "data": [build_order_response(o) for o in orders],
        "pagination": build_pagination(page, limit, total),
    }


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    *,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(get_merchant_context),
) -> Any:
    order = await get_order_or_404(db, order_id, merchant_id=context.merchant_id)
    return {"data": build_order_response(order)}


@router.post("/{order_id}/cancel")
async def cancel(
    order_id: str,
    *,
    payload: Optional[CancelRequest] = None,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(get_merchant_context),
) -> Any:
    """商户取消订单（已预留的资金与库存一并释放）"""
    order = await get_order_or_404(db, order_id, merchant_id=context.merchant_id)
    reason = payload.reason if payload else None
    await cancel_order(db, order, reason, actor_user_id=context.user.id, actor_email=context.user.email)
    await db.commit()
    logger.info(f"🛑 商户取消订单: {order.id} merchant={context.merchant_id}")
    return {"success": True, "data": build_order_response(order)}
