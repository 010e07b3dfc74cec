"""Mercury 发票（钱包充值）"""

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String

from portal.db.base import Base, created_at_column, updated_at_column, uuid_pk


class MercuryInvoiceStatus:
    UNPAID = "Unpaid"
    PROCESSING = "Processing"
    PAID = "Paid"
    CANCELLED = "Cancelled"

    ALL = (UNPAID, PROCESSING, PAID, CANCELLED)
    OPEN = (UNPAID, PROCESSING)


COMPLIANCE_RESERVE_CENTS = 50000
MIN_INVOICE_AMOUNT_CENTS = 10000
INVOICE_DUE_DAYS = 7


class MercuryInvoice(Base):
    __tablename__ = "mercury_invoices"

    id = uuid_pk()
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    mercury_invoice_id = Column(String(100), unique=True, index=True)
    mercury_slug = Column(String(100))
    invoice_number = Column(String(100))
    amount_cents = Column(Integer, nullable=False)
    status = Column(String(20), default=MercuryInvoiceStatus.UNPAID, index=True)
    due_date = Column(Date)
    payment_url = Column(String(500))
    wallet_credited = Column(Boolean, default=False, index=True, comment="是否已入账")
    wallet_transaction_id = Column(String(36))
    paid_at = Column(DateTime)
    created_at = created_at_column()
    updated_at = updated_at_column()

    def __repr__(self):
        return f"<MercuryInvoice {self.mercury_invoice_id} {self.status} {self.amount_cents}>"
