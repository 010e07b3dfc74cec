"""
系统表 - 操作日志、站内通知、Webhook 事件、全局设置
"""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text

from portal.db.base import Base, created_at_column, uuid_pk


class AuditEvent(Base):
    """操作日志 - 审计追踪

    action 采用 `资源.动作` 命名，例如：
    - order.funded / order.updated / order.refunded
    - kyb.approved / kyb.rejected
    - inventory.adjusted / inventory.lot_added
    - admin.withdrawal_completed
    - mercury.sync_invoices_batch
    """
    __tablename__ = "audit_events"

    id = uuid_pk()
    merchant_id = Column(String(36), ForeignKey("merchants.id"), index=True)
    actor_user_id = Column(String(36), comment="操作人用户ID")
    actor_email = Column(String(255), comment="操作人邮箱")
    action = Column(String(100), nullable=False, index=True, comment="操作类型")
    entity_type = Column(String(50), index=True, comment="资源类型")
    entity_id = Column(String(36), index=True, comment="资源ID")
    old_values = Column(JSON, comment="修改前")
    new_values = Column(JSON, comment="修改后")
    extra_data = Column("metadata", JSON, comment="附加信息")
    ip_address = Column(String(50))
    created_at = created_at_column()

    def __repr__(self):
        return f"<AuditEvent {self.action} {self.entity_type}:{self.entity_id}>"


class NotificationType:
    INVOICE_CREATED = "INVOICE_CREATED"
    INVOICE_PAID = "INVOICE_PAID"
    ORDER_AWAITING_FUNDS = "ORDER_AWAITING_FUNDS"
    LOW_BALANCE = "LOW_BALANCE"
    KYB_APPROVED = "KYB_APPROVED"
    KYB_REJECTED = "KYB_REJECTED"
    WITHDRAWAL_UPDATED = "WITHDRAWAL_UPDATED"


class Notification(Base):
    """商户站内通知"""
    __tablename__ = "notifications"

    id = uuid_pk()
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    type = Column(String(50), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text)
    extra_data = Column("metadata", JSON)
    read_at = Column(DateTime)
    created_at = created_at_column()


class WebhookEventStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DEAD_LETTER = "DEAD_LETTER"


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = uuid_pk()
    source = Column(String(50), nullable=False, index=True)
    event_id = Column(String(255), index=True)
    event_type = Column(String(100), index=True)
    idempotency_key = Column(String(255), unique=True, index=True)
    payload = Column(JSON)
    status = Column(String(20), default=WebhookEventStatus.PENDING, index=True)
    attempts = Column(Integer, default=0)
    last_error = Column(Text)
    processed_at = Column(DateTime)
    created_at = created_at_column()


class AdminSetting(Base):
    """全局设置（单行 id='global'，JSON 存储）"""
    __tablename__ = "admin_settings"

    id = Column(String(50), primary_key=True, default="global")
    settings = Column(JSON, default=dict)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
