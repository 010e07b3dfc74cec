"""
订单核心功能
- 响应构建
- 基础查询
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.errors import Errors
from portal.models.order import Order, Shipment
from portal.schemas.order import OrderItemResponse, OrderResponse, ShipmentResponse
from portal.services.order_flow import load_order


def build_shipment_response(shipment: Shipment) -> ShipmentResponse:
    return ShipmentResponse(
        id=shipment.id,
        order_id=shipment.order_id,
        status=shipment.status,
        carrier=shipment.carrier,
        service=shipment.service,
        tracking_number=shipment.tracking_number,
        tracking_url=shipment.tracking_url,
        label_url=shipment.label_storage_path,
        rate_cents=shipment.rate_cents,
        actual_cost_cents=shipment.actual_cost_cents,
        shipped_at=shipment.shipped_at,
        delivered_at=shipment.delivered_at,
        created_at=shipment.created_at,
    )


def build_order_response(order: Order, include_lines: bool = True) -> OrderResponse:
    """构建订单响应（需预加载 items / shipments / merchant）"""
    merchant = order.merchant
    resp = OrderResponse(
        id=order.id,
        merchant_id=order.merchant_id,
        store_id=order.store_id,
        woo_order_id=order.woo_order_id,
        woo_order_number=order.woo_order_number,
        status=order.status,
        currency=order.currency,
        subtotal_cents=order.subtotal_cents,
        handling_cents=order.handling_cents,
        shipping_estimate_cents=order.shipping_estimate_cents,
        total_estimate_cents=order.total_estimate_cents,
        actual_total_cents=order.actual_total_cents,
        shipping_address=order.shipping_address,
        customer_email=order.customer_email,
        customer_note=order.customer_note,
        supplier_notes=order.supplier_notes,
        tracking_number=order.tracking_number,
        metadata=order.extra_data,
        funded_at=order.funded_at,
        shipped_at=order.shipped_at,
        created_at=order.created_at,
        updated_at=order.updated_at,
        merchant_name=(merchant.company_name or merchant.email) if merchant else "",
    )
    if include_lines:
        resp.items = [OrderItemResponse.model_validate(item) for item in order.items]
        resp.shipments = [build_shipment_response(s) for s in order.shipments]
    return resp


async def get_order_or_404(db: AsyncSession, order_id: str, merchant_id: Optional[str] = None) -> Order:
    order = await load_order(db, order_id, merchant_id=merchant_id)
    if not order:
        raise Errors.not_found("Order not found")
    return order
