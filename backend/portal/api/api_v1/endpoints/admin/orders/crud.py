"""订单查询与更新"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from portal.core.deps import AdminContext, get_db, require_admin
from portal.models.order import Order, OrderStatus
from portal.schemas.common import build_pagination
from portal.schemas.order import AdminOrderUpdate
from portal.services.audit import client_ip, create_audit_event
from portal.services.order_flow import cancel_order, transition_order

from .core import build_order_response, get_order_or_404

logger = logging.getLogger(__name__)

router = APIRouter()

NOTE_FIELDS = ("supplier_notes", "tracking_number", "shipping_method")


@router.get("")
async def list_orders(
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    merchant_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> Any:
    """订单列表（含商户名称）"""
    conditions = []
    if status:
        conditions.append(Order.status == status)
    if merchant_id:
        conditions.append(Order.merchant_id == merchant_id)
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(
            Order.woo_order_number.ilike(pattern),
            Order.woo_order_id.ilike(pattern),
            Order.customer_email.ilike(pattern),
            Order.id.ilike(pattern),
        ))

    query = select(Order).options(
        selectinload(Order.items),
        selectinload(Order.shipments),
        selectinload(Order.merchant),
    )
    count_query = select(func.count(Order.id))
    if conditions:
        query = query.where(and_(*conditions))
        count_query = count_query.where(and_(*conditions))

    total = (await db.execute(count_query)).scalar() or 0
    query = query.order_by(Order.created_at.desc()).offset((page - 1) * limit).limit(limit)
    orders = (await db.execute(query)).scalars().all()

    return {
        "data": [build_order_response(o) for o in orders],
        "pagination": build_pagination(page, limit, total),
    }


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    order = await get_order_or_404(db, order_id)
    return {"data": build_order_response(order)}


@router.patch("")
async def update_order(
    *,
    request: Request,
    payload: AdminOrderUpdate,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    """
    更新订单

    状态变更必须符合状态机；取消会释放资金与库存预留。
    """
    updates = payload.model_dump(exclude_unset=True, exclude={"id", "reason"})
    if not updates:
        raise HTTPException(status_code=400, detail="No valid fields to update")
    if "status" in updates and updates["status"] not in OrderStatus.ALL:
        raise HTTPException(status_code=400, detail=f"Invalid status: {updates['status']}")

    order = await get_order_or_404(db, payload.id)
    old_values = {key: getattr(order, key) for key in updates}

    for key in NOTE_FIELDS:
        if key in updates:
            setattr(order, key, updates[key])

    new_status = updates.get("status")
    if new_status and new_status != order.status:
        if new_status == OrderStatus.CANCELLED:
            await cancel_order(db, order, payload.reason, actor_user_id=context.admin.user_id, actor_email=context.email)
        else:
            await transition_order(db, order, new_status, changed_by=context.email, reason=payload.reason)

    await create_audit_event(
        db, "order.updated", "order", order.id,
        merchant_id=order.merchant_id,
        actor_user_id=context.admin.user_id,
        actor_email=context.email,
        old_values=old_values,
        new_values=updates,
        metadata={"reason": payload.reason} if payload.reason else None,
        ip_address=client_ip(request),
    )
    await db.commit()
    logger.info(f"📝 管理员更新订单: {order.id} {list(updates)}")

    order = await get_order_or_404(db, order.id)
    return {"data": build_order_response(order)}
