"""
商户模型 - 多租户的根实体

生命周期：
- 注册后为 PENDING + kyb not_started
- 上传资料 → kyb in_progress
- 管理员审核通过 → ACTIVE + can_ship；驳回 → SUSPENDED
- 申请提现 → CLOSING，提现完成 → CLOSED
"""

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from portal.db.base import Base, created_at_column, updated_at_column, uuid_pk


class MerchantStatus:
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"

    ALL = (PENDING, ACTIVE, SUSPENDED, CLOSING, CLOSED)


class KybStatus:
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"

    ALL = (NOT_STARTED, IN_PROGRESS, APPROVED, REJECTED)
    PENDING_REVIEW = (IN_PROGRESS, NOT_STARTED)


class MerchantRole:
    OWNER = "MERCHANT_OWNER"
    ADMIN = "MERCHANT_ADMIN"
    USER = "MERCHANT_USER"

    LEVELS = {OWNER: 3, ADMIN: 2, USER: 1}

    @classmethod
    def level(cls, role: str) -> int:
        return cls.LEVELS.get(role, 0)


DEFAULT_LOW_BALANCE_THRESHOLD_CENTS = 100000
DEFAULT_TARGET_BALANCE_CENTS = 300000


class Merchant(Base):
    """商户"""
    __tablename__ = "merchants"

    id = uuid_pk()
    user_id = Column(String(36), unique=True, index=True, comment="Supabase 认证用户ID（所有者）")
    email = Column(String(255), nullable=False, index=True, comment="联系邮箱")
    company_name = Column(String(255), comment="公司名称")
    contact_name = Column(String(255), comment="联系人")
    phone = Column(String(50), comment="电话")
    website_url = Column(String(500), comment="网站")
    tier = Column(String(50), default="standard", comment="等级")

    status = Column(String(20), default=MerchantStatus.PENDING, index=True, comment="商户状态")
    kyb_status = Column(String(20), default=KybStatus.NOT_STARTED, index=True, comment="KYB 状态")
    can_ship = Column(Boolean, default=False, comment="是否允许发货")
    kyb_reviewed_at = Column(DateTime, comment="KYB 审核时间")
    kyb_rejection_reason = Column(Text, comment="驳回原因")

    # 账单
    billing_name = Column(String(255), comment="账单抬头")
    billing_email = Column(String(255), comment="账单邮箱")
    low_balance_threshold_cents = Column(Integer, default=DEFAULT_LOW_BALANCE_THRESHOLD_CENTS, comment="低余额阈值")
    target_balance_cents = Column(Integer, default=DEFAULT_TARGET_BALANCE_CENTS, comment="目标余额")
    price_adjustment_percent = Column(Float, default=0.0, comment="批量调价百分比")
    mercury_customer_id = Column(String(100), comment="Mercury 客户ID")

    # 协议
    agreement_accepted_at = Column(DateTime, comment="协议签署时间")
    terms_accepted_at = Column(DateTime, comment="条款接受时间")
    agreement_signature_path = Column(String(500), comment="签名存储路径")

    created_at = created_at_column()
    updated_at = updated_at_column()

    members = relationship("MerchantUser", back_populates="merchant", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Merchant {self.company_name or self.email} {self.status}>"

    @property
    def display_name(self) -> str:
        return self.company_name or self.email

    @property
    def is_closed_or_closing(self) -> bool:
        return self.status in (MerchantStatus.CLOSING, MerchantStatus.CLOSED)


class MerchantUser(Base):
    """商户团队成员（所有者之外的登录用户）"""
    __tablename__ = "merchant_users"
    __table_args__ = (UniqueConstraint("merchant_id", "user_id", name="uq_merchant_user"),)

    id = uuid_pk()
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True, comment="Supabase 认证用户ID")
    email = Column(String(255), nullable=False, comment="邮箱")
    role = Column(String(30), default=MerchantRole.USER, comment="角色")
    is_active = Column(Boolean, default=True, comment="是否启用")
    invited_by = Column(String(36), comment="邀请人")
    invited_at = Column(DateTime, comment="邀请时间")
    created_at = created_at_column()

    merchant = relationship("Merchant", back_populates="members")

    def __repr__(self):
        return f"<MerchantUser {self.email} {self.role}>"


class KybDocument(Base):
    """KYB 资料文件（每种类型保留最新一份）"""
    __tablename__ = "kyb_documents"
    __table_args__ = (UniqueConstraint("user_id", "document_type", name="uq_kyb_user_doc_type"),)

    id = uuid_pk()
    user_id = Column(String(36), nullable=False, index=True)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), index=True)
    document_type = Column(String(50), nullable=False, comment="资料类型")
    file_name = Column(String(255), comment="原文件名")
    storage_path = Column(String(500), nullable=False, comment="存储路径")
    file_size_bytes = Column(Integer, comment="文件大小")
    mime_type = Column(String(100), comment="文件类型")
    status = Column(String(20), default="uploaded", comment="状态")
    created_at = created_at_column()
    updated_at = updated_at_column()
