"""订单 / 发货 Schema"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from portal.schemas.common import Pagination


class OrderItemResponse(BaseModel):
    id: str
    product_id: Optional[str]
    sku: str
    name: Optional[str]
    qty: int
    unit_price_cents: int
    lot_id: Optional[str] = None
    lot_code: Optional[str] = None

    class Config:
        from_attributes = True


class ShipmentResponse(BaseModel):
    id: str
    order_id: str
    status: str
    carrier: Optional[str]
    service: Optional[str]
    tracking_number: Optional[str]
    tracking_url: Optional[str]
    label_url: Optional[str] = None
    rate_cents: Optional[int]
    actual_cost_cents: Optional[int]
    shipped_at: Optional[datetime]
    delivered_at: Optional[datetime]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """订单响应"""
    id: str
    merchant_id: str
    store_id: Optional[str]
    woo_order_id: Optional[str]
    woo_order_number: Optional[str]
    status: str
    currency: Optional[str]
    subtotal_cents: Optional[int]
    handling_cents: Optional[int]
    shipping_estimate_cents: Optional[int]
    total_estimate_cents: Optional[int]
    actual_total_cents: Optional[int]
    shipping_address: Optional[Dict[str, Any]]
    customer_email: Optional[str]
    customer_note: Optional[str]
    supplier_notes: Optional[str]
    tracking_number: Optional[str]
    metadata: Optional[Dict[str, Any]] = None
    funded_at: Optional[datetime]
    shipped_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    # 显示字段
    merchant_name: str = ""
    items: List[OrderItemResponse] = []
    shipments: List[ShipmentResponse] = []

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    data: List[OrderResponse]
    pagination: Pagination


class AdminOrderUpdate(BaseModel):
    """管理员更新订单（状态走状态机）"""
    id: str
    status: Optional[str] = None
    supplier_notes: Optional[str] = None
    tracking_number: Optional[str] = None
    shipping_method: Optional[str] = None
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class PackItem(BaseModel):
    order_item_id: str
    lot_code: str = Field(..., min_length=1)


class PackRequest(BaseModel):
    items: List[PackItem] = []


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class ShipmentCreate(BaseModel):
    order_id: str
    carrier: str = Field(..., min_length=1)
    service: str = Field(..., min_length=1)
    weight_oz: Optional[float] = Field(None, gt=0)


class ShipmentShip(BaseModel):
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    actual_cost_cents: Optional[int] = Field(None, ge=0)


class ShipmentUpdate(BaseModel):
    status: str


class CreateShipmentsRequest(BaseModel):
    """批量建发货单"""
    order_ids: List[str] = Field(..., min_length=1, max_length=100)
    carrier: str = Field("usps", min_length=1)
    service: str = Field("usps_priority_mail", min_length=1)
    weight_oz: Optional[float] = Field(None, gt=0)
