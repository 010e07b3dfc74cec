"""
钱包模型 - 商户预付余额

核心逻辑：
- balance_cents：账户余额（不可为负）
- reserved_cents：已为订单预留的金额
- 可用余额 = balance - reserved（下单时再扣除合规保证金）
- 每次余额变动写一条 wallet_transactions，带变动后余额与幂等键
"""

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from portal.db.base import Base, created_at_column, updated_at_column, uuid_pk


class WalletTransactionType:
    TOPUP = "TOPUP"
    RESERVATION = "RESERVATION"
    RESERVATION_RELEASE = "RESERVATION_RELEASE"
    SETTLEMENT = "SETTLEMENT"
    ADJUSTMENT = "ADJUSTMENT"
    REFUND = "REFUND"
    USD_WITHDRAWAL_REQUESTED = "USD_WITHDRAWAL_REQUESTED"
    USD_WITHDRAWAL_COMPLETED = "USD_WITHDRAWAL_COMPLETED"


class WalletAccount(Base):
    __tablename__ = "wallet_accounts"
    __table_args__ = (
        UniqueConstraint("merchant_id", "currency", name="uq_wallet_merchant_currency"),
        CheckConstraint("balance_cents >= 0", name="ck_wallet_balance_non_negative"),
    )

    id = uuid_pk()
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    currency = Column(String(3), default="USD", nullable=False)
    balance_cents = Column(Integer, default=0, nullable=False, comment="余额")
    reserved_cents = Column(Integer, default=0, nullable=False, comment="已预留")
    created_at = created_at_column()
    updated_at = updated_at_column()

    def __repr__(self):
        return f"<WalletAccount {self.merchant_id} {self.currency} {self.balance_cents}/{self.reserved_cents}>"

    @property
    def available_cents(self) -> int:
        return (self.balance_cents or 0) - (self.reserved_cents or 0)


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = uuid_pk()
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    wallet_id = Column(String(36), ForeignKey("wallet_accounts.id"), nullable=False, index=True)
    type = Column(String(40), nullable=False, index=True, comment="流水类型")
    amount_cents = Column(Integer, nullable=False, comment="变动金额（负数为扣款）")
    balance_after_cents = Column(Integer, nullable=False, comment="变动后余额")
    reference_type = Column(String(50), comment="关联类型")
    reference_id = Column(String(36), index=True, comment="关联ID")
    description = Column(Text)
    idempotency_key = Column(String(255), unique=True, index=True)
    extra_data = Column("metadata", JSON)
    created_at = created_at_column()


class WithdrawalStatus:
    PENDING_ADMIN = "PENDING_ADMIN"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"

    ALL = (PENDING_ADMIN, PROCESSING, COMPLETED, REJECTED)
    FINAL = (COMPLETED, REJECTED)


class WithdrawalRequest(Base):
    """提现申请（提取全部可用余额并关闭账户）"""
    __tablename__ = "withdrawal_requests"

    id = uuid_pk()
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), default="USD")
    payout_email = Column(String(255))
    status = Column(String(20), default=WithdrawalStatus.PENDING_ADMIN, index=True)
    admin_notes = Column(Text)
    processed_by = Column(String(255))
    completed_at = Column(DateTime)
    created_at = created_at_column()
    updated_at = updated_at_column()
