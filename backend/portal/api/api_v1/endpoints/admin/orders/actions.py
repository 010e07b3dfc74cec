"""
订单操作
- 打包（批次分配）
- 退款 / 取消
- 拣货单
- 批量建发货单
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.core.deps import AdminContext, get_db, require_admin
from portal.core.errors import ApiError
from portal.schemas.order import CancelRequest, CreateShipmentsRequest, PackRequest, RefundRequest
from portal.services.errors import ServiceError
from portal.services.order_flow import cancel_order, create_shipment, pack_order, refund_order
from portal.services.shipstation import ShipStationClient, get_shipstation_client

from .core import build_order_response, get_order_or_404

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/create-shipments")
async def create_shipments(
    *,
    payload: CreateShipmentsRequest,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    shipstation: ShipStationClient = Depends(get_shipstation_client),
) -> Any:
    """批量建发货单，逐单提交，单个失败不影响其他订单"""
    results: List[Dict[str, Any]] = []
    for order_id in payload.order_ids:
        try:
            order = await get_order_or_404(db, order_id)
            shipment = await create_shipment(
                db, order, payload.carrier, payload.service,
                shipstation=shipstation,
                weight_oz=payload.weight_oz,
                actor_email=context.email,
            )
            await db.commit()
            results.append({"order_id": order_id, "success": True, "shipment_id": shipment.id, "status": shipment.status})
        except ApiError as e:
            await db.rollback()
            results.append({"order_id": order_id, "success": False, "error": e.message})
        except ServiceError as e:
            await db.rollback()
            logger.warning(f"批量发货失败 order={order_id}: {e}")
            results.append({"order_id": order_id, "success": False, "error": e.public_message})

    succeeded = sum(1 for r in results if r["success"])
    logger.info(f"🚚 批量建发货单: {succeeded}/{len(results)} 成功")
    return {
        "total": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "results": results,
    }


@router.post("/{order_id}/pack")
async def pack(
    order_id: str,
    *,
    payload: PackRequest,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    order = await get_order_or_404(db, order_id)
    result = await pack_order(db, order, [item.model_dump() for item in payload.items], actor_email=context.email)
    await db.commit()
    return {"success": True, **result}


@router.post("/{order_id}/refund")
async def refund(
    order_id: str,
    *,
    payload: RefundRequest,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    """退款：已结算订单退回钱包，未结算订单只释放预留"""
    order = await get_order_or_404(db, order_id)
    result = await refund_order(db, order, payload.reason, actor_email=context.email)
    await db.commit()
    logger.info(f"💸 订单退款: {order_id} amount={result['refundAmountCents']} credit={result['walletCreditCents']}")
    return {"success": True, **result}


@router.post("/{order_id}/cancel")
async def cancel(
    order_id: str,
    *,
    payload: CancelRequest,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    order = await get_order_or_404(db, order_id)
    await cancel_order(db, order, payload.reason or "Cancelled by admin", actor_user_id=context.admin.user_id, actor_email=context.email)
    await db.commit()
    return {"success": True, "data": build_order_response(order)}


@router.get("/{order_id}/packing-slip")
async def packing_slip(
    order_id: str,
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    """拣货单数据（批次号附带 COA 查询链接）"""
    order = await get_order_or_404(db, order_id)
    merchant = order.merchant
    shipment = order.shipments[0] if order.shipments else None
    ship_date = order.shipped_at or order.created_at
    base_url = settings.APP_URL.rstrip("/")

    return {
        "data": {
            "order_id": order.id,
            "woo_order_id": order.woo_order_id or order.id,
            "woo_order_number": order.woo_order_number,
            "merchant_name": (merchant.company_name or merchant.email) if merchant else "Unknown",
            "shipping_address": order.shipping_address or {},
            "items": [
                {
                    "sku": item.sku or "",
                    "name": item.name or "",
                    "qty": item.qty or 0,
                    "lot_code": item.lot_code,
                    "coa_url": f"{base_url}/coa/{item.lot_code}" if item.lot_code else None,
                }
                for item in order.items
            ],
            "tracking_number": shipment.tracking_number if shipment else None,
            "carrier": shipment.carrier if shipment else None,
            "ship_date": ship_date.date().isoformat() if ship_date else None,
        }
    }
