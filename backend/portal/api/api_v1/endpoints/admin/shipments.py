"""发货单：建单（可购买面单）、发货结算、状态变更"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.deps import AdminContext, get_db, require_admin
from portal.models.order import Shipment, ShipmentStatus
from portal.schemas.order import ShipmentCreate, ShipmentShip, ShipmentUpdate
from portal.services.order_flow import create_shipment, mark_shipped, update_shipment_status
from portal.services.shipstation import ShipStationClient, get_shipstation_client

from .orders.core import build_shipment_response, get_order_or_404

logger = logging.getLogger(__name__)

router = APIRouter()


async def _get_shipment_or_404(db: AsyncSession, shipment_id: str) -> Shipment:
    shipment = await db.get(Shipment, shipment_id)
    if not shipment:
        raise HTTPException(status_code=404, detail="Shipment not found")
    return shipment


@router.post("", status_code=201)
async def create(
    *,
    payload: ShipmentCreate,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    shipstation: ShipStationClient = Depends(get_shipstation_client),
) -> Any:
    order = await get_order_or_404(db, payload.order_id)
    shipment = await create_shipment(
        db, order, payload.carrier, payload.service,
        shipstation=shipstation,
        weight_oz=payload.weight_oz,
        actor_email=context.email,
    )
    await db.commit()
    logger.info(f"📮 发货单已创建: {shipment.id} order={order.id} status={shipment.status}")
    return {"data": build_shipment_response(shipment)}


@router.post("/{shipment_id}/ship")
async def ship(
    shipment_id: str,
    *,
    payload: ShipmentShip,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    """发货：释放预估预留，按实际金额结算"""
    shipment = await _get_shipment_or_404(db, shipment_id)
    order = await get_order_or_404(db, shipment.order_id)
    result = await mark_shipped(
        db, shipment, order,
        tracking_number=payload.tracking_number,
        tracking_url=payload.tracking_url,
        carrier=payload.carrier,
        actual_cost_cents=payload.actual_cost_cents,
        actor_email=context.email,
    )
    await db.commit()
    return {"success": True, "data": result}


@router.patch("/{shipment_id}")
async def update_status(
    shipment_id: str,
    *,
    payload: ShipmentUpdate,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    if payload.status not in ShipmentStatus.ALL:
        raise HTTPException(status_code=400, detail=f"Invalid shipment status: {payload.status}")
    shipment = await _get_shipment_or_404(db, shipment_id)
    order = await get_order_or_404(db, shipment.order_id)
    await update_shipment_status(db, shipment, order, payload.status, actor_email=context.email)
    await db.commit()
    return {"success": True, "data": build_shipment_response(shipment)}
