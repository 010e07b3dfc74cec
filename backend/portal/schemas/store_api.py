"""店铺插件 API Schema"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class StoreAddress(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    address_1: str = Field(..., min_length=1)
    address_2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    postcode: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2, max_length=2)
    phone: Optional[str] = None
    email: Optional[str] = None

    @field_validator("country", mode="before")
    @classmethod
    def upper_country(cls, v):
        return v.upper() if isinstance(v, str) else v


class StoreOrderItem(BaseModel):
    supplier_sku: str = Field(..., min_length=1)
    woo_product_id: Optional[int] = None
    qty: int = Field(..., ge=1)
    unit_price_cents: Optional[int] = Field(None, ge=0)
    name: Optional[str] = None


class StoreOrderCreate(BaseModel):
    """店铺推送订单"""
    woo_order_id: str = Field(..., min_length=1)
    woo_order_number: Optional[str] = None
    currency: str = Field(default="USD", min_length=3, max_length=3)
    shipping_address: StoreAddress
    billing_address: Optional[StoreAddress] = None
    customer_email: Optional[str] = None
    customer_note: Optional[str] = None
    items: List[StoreOrderItem] = Field(..., min_length=1, max_length=100)

    @field_validator("woo_order_id", "woo_order_number", mode="before")
    @classmethod
    def coerce_str(cls, v):
        return str(v) if isinstance(v, int) else v


class StoreOrderCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)
    refund_to_wallet: bool = True


class ConnectExchangeRequest(BaseModel):
    connect_code: str = Field(..., min_length=8, max_length=32)
    store_url: str = Field(..., min_length=1)
    store_name: str = Field(..., min_length=1)
    woo_version: Optional[str] = None
    currency: str = "USD"
    timezone: Optional[str] = None


class StoreOrderItemResponse(BaseModel):
    id: str
    sku: str
    name: Optional[str]
    qty: int
    unit_price_cents: int

    class Config:
        from_attributes = True


class StoreOrderResponse(BaseModel):
    id: str
    woo_order_id: Optional[str]
    woo_order_number: Optional[str]
    status: str
    currency: Optional[str]
    subtotal_cents: Optional[int]
    total_estimate_cents: Optional[int]
    actual_total_cents: Optional[int]
    tracking_number: Optional[str] = None
    created_at: Optional[datetime]
    shipped_at: Optional[datetime]
    items: List[StoreOrderItemResponse] = []

    class Config:
        from_attributes = True
