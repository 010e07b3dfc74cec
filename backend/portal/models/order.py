"""
订单模型 - 店铺下单 → 资金预留 → 拣货打包 → 发货结算

状态流转见 portal.services.order_flow.ORDER_TRANSITIONS，
每次流转都写入 order_status_history。
"""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from portal.db.base import Base, created_at_column, updated_at_column, uuid_pk


class OrderStatus:
    RECEIVED = "RECEIVED"
    AWAITING_FUNDS = "AWAITING_FUNDS"
    ON_HOLD_PAYMENT = "ON_HOLD_PAYMENT"
    ON_HOLD_COMPLIANCE = "ON_HOLD_COMPLIANCE"
    FUNDED = "FUNDED"
    RELEASED_TO_FULFILLMENT = "RELEASED_TO_FULFILLMENT"
    PICKING = "PICKING"
    PACKED = "PACKED"
    SHIPPED = "SHIPPED"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    ALL = (
        RECEIVED, AWAITING_FUNDS, ON_HOLD_PAYMENT, ON_HOLD_COMPLIANCE, FUNDED,
        RELEASED_TO_FULFILLMENT, PICKING, PACKED, SHIPPED, COMPLETE, CANCELLED, REFUNDED,
    )
    # 不计入“进行中”
    CLOSED = (COMPLETE, CANCELLED, REFUNDED)
    # 资金已预留但尚未结算
    RESERVED = (FUNDED, RELEASED_TO_FULFILLMENT, PICKING, PACKED)


class Order(Base):
    __tablename__ = "orders"

    id = uuid_pk()
    store_id = Column(String(36), ForeignKey("stores.id"), index=True)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    woo_order_id = Column(String(50), index=True, comment="店铺订单ID")
    woo_order_number = Column(String(50), comment="店铺订单号")
    status = Column(String(30), default=OrderStatus.RECEIVED, nullable=False, index=True)
    currency = Column(String(3), default="USD")
    shipping_method = Column(String(100))

    subtotal_cents = Column(Integer, default=0, comment="商品小计")
    handling_cents = Column(Integer, default=0, comment="操作费")
    shipping_estimate_cents = Column(Integer, default=0, comment="预估运费")
    total_estimate_cents = Column(Integer, default=0, comment="预估总额（预留金额）")
    actual_total_cents = Column(Integer, comment="结算总额")

    shipping_address = Column(JSON, comment="收货地址")
    billing_address = Column(JSON, comment="账单地址")
    customer_email = Column(String(255), index=True)
    customer_note = Column(Text)
    supplier_notes = Column(Text, comment="供应商备注")
    tracking_number = Column(String(100))

    idempotency_key = Column(String(255), unique=True, index=True)
    wallet_reservation_id = Column(String(36), comment="预留流水ID")
    extra_data = Column("metadata", JSON, comment="附加信息")

    funded_at = Column(DateTime)
    shipped_at = Column(DateTime)
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    refunded_at = Column(DateTime)
    created_at = created_at_column()
    updated_at = updated_at_column()

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    shipments = relationship("Shipment", back_populates="order", cascade="all, delete-orphan")
    merchant = relationship("Merchant")

    def __repr__(self):
        return f"<Order {self.woo_order_number or self.id} {self.status}>"

    @property
    def items_subtotal_cents(self) -> int:
        return sum((item.unit_price_cents or 0) * (item.qty or 0) for item in self.items)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = uuid_pk()
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), index=True)
    sku = Column(String(50), nullable=False)
    name = Column(String(255))
    qty = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    lot_id = Column(String(36), ForeignKey("lots.id"), comment="打包时分配的批次")
    lot_code = Column(String(100))

    order = relationship("Order", back_populates="items")


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id = uuid_pk()
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    from_status = Column(String(30))
    to_status = Column(String(30), nullable=False)
    changed_by = Column(String(255))
    reason = Column(Text)
    created_at = created_at_column()


class ShipmentStatus:
    PENDING = "PENDING"
    LABEL_CREATED = "LABEL_CREATED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    RETURNED = "RETURNED"

    ALL = (PENDING, LABEL_CREATED, PICKED_UP, IN_TRANSIT, DELIVERED, FAILED, RETURNED)


class Shipment(Base):
    __tablename__ = "shipments"

    id = uuid_pk()
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    status = Column(String(20), default=ShipmentStatus.PENDING, index=True)
    carrier = Column(String(50))
    service = Column(String(100))
    tracking_number = Column(String(100), index=True)
    tracking_url = Column(String(500))
    label_storage_path = Column(Text, comment="面单地址或数据")
    rate_cents = Column(Integer, comment="面单运费")
    actual_cost_cents = Column(Integer, comment="实际运费")
    weight_oz = Column(Integer)
    shipped_at = Column(DateTime)
    delivered_at = Column(DateTime)
    created_at = created_at_column()
    updated_at = updated_at_column()

    order = relationship("Order", back_populates="shipments")

    def __repr__(self):
        return f"<Shipment {self.tracking_number or self.id} {self.status}>"
