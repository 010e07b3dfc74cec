"""商品 / 库存 / 定价 Schema"""

from datetime import date, datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


class ProductCreate(BaseModel):
    """新增商品（同时建库存行）"""
    sku: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[str] = None
    cost_cents: int = Field(..., ge=0, validation_alias=AliasChoices("cost_cents", "wholesale_price_cents"))
    weight_grams: Optional[int] = Field(None, ge=0)
    image_url: Optional[str] = None
    active: bool = True
    on_hand: int = Field(0, ge=0)
    reorder_point: int = Field(10, ge=0)

    @field_validator("sku", mode="before")
    @classmethod
    def normalize_sku(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class InventoryUpdate(BaseModel):
    """更新商品与库存（按 product_id）"""
    product_id: str
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    cost_cents: Optional[int] = Field(None, ge=0)
    weight_grams: Optional[int] = Field(None, ge=0)
    image_url: Optional[str] = None
    active: Optional[bool] = None
    on_hand: Optional[int] = Field(None, ge=0)
    incoming: Optional[int] = Field(None, ge=0)
    reorder_point: Optional[int] = Field(None, ge=0)
    reason: Optional[str] = None


class InventoryItemResponse(BaseModel):
    id: str
    sku: str
    name: str
    description: Optional[str]
    category: Optional[str]
    cost_cents: int
    weight_grams: Optional[int]
    image_url: Optional[str]
    active: bool
    on_hand: int = 0
    reserved: int = 0
    incoming: int = 0
    available: int = 0
    reorder_point: int = 10
    is_low_stock: bool = False
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class LotResponse(BaseModel):
    id: str
    product_id: str
    lot_code: str
    coa_storage_path: Optional[str]
    manufactured_at: Optional[date]
    expires_at: Optional[date]
    quantity: Optional[int]
    notes: Optional[str]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class PricingOverride(BaseModel):
    product_id: str
    wholesale_price_cents: Optional[int] = Field(None, ge=0)


class PricingOverridesUpdate(BaseModel):
    overrides: List[PricingOverride] = []


class PricingAdjustment(BaseModel):
    adjustment_percent: float = Field(..., ge=-100, le=1000)
