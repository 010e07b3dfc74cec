"""
商品目录 - 商品、库存、批次(COA)、商户定价

库存规则：
- available = on_hand - reserved
- 批次入库时数量累加到 on_hand，删除批次时扣减剩余数量（不低于 0）
- 打包出库时扣减批次数量与 on_hand
"""

from sqlalchemy import Boolean, Column, Date, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from portal.db.base import Base, created_at_column, updated_at_column, uuid_pk

DEFAULT_REORDER_POINT = 10


class Product(Base):
    """商品（SKU 全局唯一，统一大写）"""
    __tablename__ = "products"

    id = uuid_pk()
    sku = Column(String(50), unique=True, nullable=False, index=True, comment="SKU")
    name = Column(String(255), nullable=False, comment="名称")
    description = Column(Text, comment="描述")
    category = Column(String(100), index=True, comment="分类")
    cost_cents = Column(Integer, nullable=False, default=0, comment="基础批发价（分）")
    weight_grams = Column(Integer, comment="重量")
    image_url = Column(String(500), comment="图片")
    active = Column(Boolean, default=True, index=True, comment="是否上架")
    created_at = created_at_column()
    updated_at = updated_at_column()

    inventory = relationship("Inventory", back_populates="product", uselist=False, cascade="all, delete-orphan")
    lots = relationship("Lot", back_populates="product", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Product {self.sku}>"


class Inventory(Base):
    """库存（每个商品一行）"""
    __tablename__ = "inventory"

    id = uuid_pk()
    product_id = Column(String(36), ForeignKey("products.id"), unique=True, nullable=False, index=True)
    on_hand = Column(Integer, default=0, nullable=False, comment="在库")
    reserved = Column(Integer, default=0, nullable=False, comment="已预留")
    incoming = Column(Integer, default=0, nullable=False, comment="在途")
    reorder_point = Column(Integer, default=DEFAULT_REORDER_POINT, comment="补货点")
    updated_at = updated_at_column()

    product = relationship("Product", back_populates="inventory")

    @property
    def available(self) -> int:
        return (self.on_hand or 0) - (self.reserved or 0)

    @property
    def is_low_stock(self) -> bool:
        return self.available <= (self.reorder_point if self.reorder_point is not None else DEFAULT_REORDER_POINT)


class Lot(Base):
    """生产批次，可附 COA（检测报告 PDF）"""
    __tablename__ = "lots"
    __table_args__ = (UniqueConstraint("product_id", "lot_code", name="uq_lot_product_code"),)

    id = uuid_pk()
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    lot_code = Column(String(100), nullable=False, index=True, comment="批次号")
    coa_storage_path = Column(String(500), comment="COA 存储路径")
    manufactured_at = Column(Date, comment="生产日期")
    expires_at = Column(Date, comment="有效期")
    quantity = Column(Integer, comment="剩余数量")
    notes = Column(Text, comment="备注")
    created_at = created_at_column()

    product = relationship("Product", back_populates="lots")

    def __repr__(self):
        return f"<Lot {self.lot_code} qty={self.quantity}>"


class MerchantProduct(Base):
    """商户可售商品白名单 + 专属价格"""
    __tablename__ = "merchant_products"
    __table_args__ = (UniqueConstraint("merchant_id", "product_id", name="uq_merchant_product"),)

    id = uuid_pk()
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    allowed = Column(Boolean, default=True, comment="是否可售")
    wholesale_price_cents = Column(Integer, comment="专属批发价")
    map_price_cents = Column(Integer, comment="最低广告价")
    min_qty = Column(Integer, comment="最小数量")
    max_qty = Column(Integer, comment="最大数量")
    created_at = created_at_column()
    updated_at = updated_at_column()

    product = relationship("Product")
