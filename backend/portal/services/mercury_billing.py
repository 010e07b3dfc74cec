"""
Mercury 钱包充值发票

- 管理员手动开票 / 余额检查自动开票
- 发票同步：Paid 才入账（Processing 不入账），入账前先用条件更新抢占 wallet_credited，避免重复入账
- 入账后重试该商户的待付款订单
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.errors import ApiError
from portal.models.billing import (
    COMPLIANCE_RESERVE_CENTS,
    INVOICE_DUE_DAYS,
    MIN_INVOICE_AMOUNT_CENTS,
    MercuryInvoice,
    MercuryInvoiceStatus,
)
from portal.models.merchant import Merchant, MerchantStatus
from portal.models.system import NotificationType
from portal.models.wallet import WalletAccount, WalletTransaction, WalletTransactionType
from portal.services.audit import create_audit_event
from portal.services.email import EmailClient, format_usd, invoice_created_email, invoice_paid_email
from portal.services.errors import MercuryError, ServiceError
from portal.services.mercury import MercuryClient, cents_to_dollar_string, format_mercury_date, get_payment_url
from portal.services.notifications import create_notification
from portal.services.order_flow import retry_awaiting_funds
from portal.services.wallet import adjust_balance, get_wallet

logger = logging.getLogger(__name__)


def invoice_amount_for(merchant: Merchant, wallet: Optional[WalletAccount]) -> int:
    """开票金额 = 目标余额 - (余额 - 预留)，不低于最小开票金额"""
    current = wallet.available_cents if wallet else 0
    return max(MIN_INVOICE_AMOUNT_CENTS, (merchant.target_balance_cents or 0) - current)


async def has_open_invoice(db: AsyncSession, merchant_id: str) -> bool:
    result = await db.execute(
        select(MercuryInvoice.id)
        .where(MercuryInvoice.merchant_id == merchant_id, MercuryInvoice.status.in_(MercuryInvoiceStatus.OPEN))
        .limit(1)
    )
    return result.first() is not None


async def ensure_mercury_customer(mercury: MercuryClient, merchant: Merchant) -> Optional[str]:
    """确保商户在 Mercury 有应收客户，返回客户ID（调用方提交）"""
    if merchant.mercury_customer_id:
        return merchant.mercury_customer_id
    customer = await mercury.create_customer(
        merchant.billing_name or merchant.display_name,
        merchant.billing_email or merchant.email,
    )
    merchant.mercury_customer_id = customer["id"]
    logger.info(f"🏦 创建 Mercury 客户: merchant={merchant.id} customer={customer['id']}")
    return merchant.mercury_customer_id


async def create_wallet_invoice(
    db: AsyncSession,
    mercury: MercuryClient,
    merchant: Merchant,
    amount_cents: Optional[int] = None,
    email_client: Optional[EmailClient] = None,
) -> MercuryInvoice:
    """为商户开具钱包充值发票（7 天到期，Mercury 直接发送邮件）"""
    if not merchant.mercury_customer_id:
        raise ApiError("MERCURY_CUSTOMER_MISSING", "Merchant not found or Mercury not configured", 400)

    wallet = await get_wallet(db, merchant.id, "USD")
    amount = amount_cents or invoice_amount_for(merchant, wallet)
    today = date.today()
    due_date = today + timedelta(days=INVOICE_DUE_DAYS)
    name = merchant.display_name

    remote = await mercury.create_invoice(
        customer_id=merchant.mercury_customer_id,
        due_date=format_mercury_date(due_date),
        invoice_date=format_mercury_date(today),
        line_items=[{"name": f"Wallet Funding - {name}", "unitPrice": cents_to_dollar_string(amount), "quantity": 1}],
        cc_emails=[merchant.billing_email] if merchant.billing_email and merchant.billing_email != merchant.email else [],
        payer_memo=f"Wallet replenishment for {name}. Pay via ACH to fund your WhiteLabel Peptides account.",
    )

    payment_url = get_payment_url(remote.get("slug"))
    invoice = MercuryInvoice(
        merchant_id=merchant.id,
        mercury_invoice_id=remote["id"],
        mercury_slug=remote.get("slug"),
        invoice_number=remote.get("invoiceNumber"),
        amount_cents=amount,
        status=MercuryInvoiceStatus.UNPAID,
        due_date=due_date,
        payment_url=payment_url,
        wallet_credited=False,
    )
    db.add(invoice)
    await db.flush()

    await create_notification(
        db, merchant.id, NotificationType.INVOICE_CREATED,
        "Invoice Sent",
        f"A {format_usd(amount)} invoice has been sent to {merchant.billing_email or merchant.email}. Pay to fund your wallet.",
        {"mercury_invoice_id": remote["id"], "amount_cents": amount, "payment_url": payment_url},
    )
    if email_client is not None:
        subject, body = invoice_created_email(name, amount, format_mercury_date(due_date), payment_url)
        await email_client.send_safely(merchant.billing_email or merchant.email, subject, body)

    logger.info(f"🧾 创建充值发票: merchant={merchant.id} amount={amount} mercury={remote['id']}")
    return invoice


async def cancel_wallet_invoice(db: AsyncSession, mercury: MercuryClient, invoice: MercuryInvoice) -> MercuryInvoice:
    if invoice.status != MercuryInvoiceStatus.UNPAID:
        raise ApiError("INVOICE_NOT_CANCELLABLE", "Invoice not found or not cancellable", 400)
    try:
        await mercury.cancel_invoice(invoice.mercury_invoice_id)
    except MercuryError as e:
        logger.error(f"❌ Mercury 取消发票失败 {invoice.mercury_invoice_id}: {e}")
        raise ApiError("MERCURY_CANCEL_FAILED", "Failed to cancel invoice in Mercury", 502)
    invoice.status = MercuryInvoiceStatus.CANCELLED
    return invoice


async def credit_paid_invoice(db: AsyncSession, invoice: MercuryInvoice) -> Optional[WalletTransaction]:
    """
    发票已结清 → 钱包入账

    先用条件更新把 wallet_credited 从 False 改为 True，抢占失败说明已入账。
    """
    claimed = await db.execute(
        update(MercuryInvoice)
        .where(MercuryInvoice.id == invoice.id, MercuryInvoice.wallet_credited.is_(False))
        .values(wallet_credited=True)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        logger.warning(f"发票 {invoice.id} 已入账，跳过")
        return None

    transaction = await adjust_balance(
        db, invoice.merchant_id, invoice.amount_cents, WalletTransactionType.TOPUP,
        reference_type="mercury_invoice",
        reference_id=invoice.id,
        description=f"Mercury invoice payment {invoice.invoice_number or invoice.mercury_invoice_id}",
        idempotency_key=f"mercury-invoice-{invoice.id}",
        metadata={"mercury_invoice_id": invoice.mercury_invoice_id},
        create_wallet=True,
    )
    invoice.wallet_credited = True
    invoice.wallet_transaction_id = transaction.id
    invoice.status = MercuryInvoiceStatus.PAID
    invoice.paid_at = datetime.utcnow()
    return transaction


async def sync_invoices(
    db: AsyncSession,
    mercury: MercuryClient,
    email_client: Optional[EmailClient] = None,
) -> Dict[str, Any]:
    """轮询未结清发票状态（每张发票独立提交）"""
    result = await db.execute(
        select(MercuryInvoice)
        .where(MercuryInvoice.status.in_(MercuryInvoiceStatus.OPEN), MercuryInvoice.wallet_credited.is_(False))
        .order_by(MercuryInvoice.created_at.asc())
    )
    # rollback 会让已加载对象过期，循环内按ID重新读取
    open_invoice_ids = [invoice.id for invoice in result.scalars().all()]
    if not open_invoice_ids:
        return {"invoicesChecked": 0, "credited": 0, "statusUpdates": 0, "errors": 0, "fundedOrders": 0}

    credited: List[Dict[str, Any]] = []
    status_updates: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []

    for invoice_id in open_invoice_ids:
        invoice = await db.get(MercuryInvoice, invoice_id)
        try:
            remote = await mercury.get_invoice(invoice.mercury_invoice_id)
            new_status = remote.get("status")
            if new_status == invoice.status:
                continue
            status_updates.append({"invoiceId": invoice.id, "oldStatus": invoice.status, "newStatus": new_status})

            if new_status == MercuryInvoiceStatus.PAID:
                transaction = await credit_paid_invoice(db, invoice)
                if transaction:
                    credited.append({"invoiceId": invoice.id, "merchantId": invoice.merchant_id, "amount": invoice.amount_cents})
                    await create_notification(
                        db, invoice.merchant_id, NotificationType.INVOICE_PAID,
                        "Payment Received",
                        f"{format_usd(invoice.amount_cents)} has been credited to your wallet from invoice payment.",
                        {
                            "mercury_invoice_id": invoice.mercury_invoice_id,
                            "amount_cents": invoice.amount_cents,
                            "transaction_id": transaction.id,
                        },
                    )
                    if email_client is not None:
                        merchant = await db.get(Merchant, invoice.merchant_id)
                        if merchant:
                            subject, body = invoice_paid_email(merchant.display_name, invoice.amount_cents, transaction.balance_after_cents)
                            await email_client.send_safely(merchant.billing_email or merchant.email, subject, body)
            elif new_status in (MercuryInvoiceStatus.PROCESSING, MercuryInvoiceStatus.CANCELLED):
                invoice.status = new_status
            await db.commit()
        except (ServiceError, ApiError) as e:
            await db.rollback()
            logger.error(f"❌ 同步发票失败 {invoice_id}: {e}")
            errors.append({"invoiceId": invoice_id, "error": str(e)})

    funded_orders: List[str] = []
    for merchant_id in dict.fromkeys(c["merchantId"] for c in credited):
        funded_orders.extend(await retry_awaiting_funds(db, merchant_id))
    if funded_orders:
        await db.commit()

    if credited or status_updates:
        await create_audit_event(
            db, "mercury.sync_invoices_batch", "system", "mercury-sync-invoices",
            metadata={
                "invoices_checked": len(open_invoice_ids),
                "invoices_credited": len(credited),
                "status_updates": len(status_updates),
                "errors": len(errors),
            },
        )
        await db.commit()

    summary = {
        "invoicesChecked": len(open_invoice_ids),
        "credited": len(credited),
        "statusUpdates": len(status_updates),
        "errors": len(errors),
        "fundedOrders": len(funded_orders),
    }
    logger.info(f"🔄 Mercury 发票同步完成: {summary}")
    return summary


async def check_balances(
    db: AsyncSession,
    mercury: MercuryClient,
    email_client: Optional[EmailClient] = None,
) -> Dict[str, Any]:
    """低余额自动开票：可用余额（扣除合规保证金）低于阈值且没有未结发票"""
    result = await db.execute(
        select(Merchant).where(
            Merchant.status == MerchantStatus.ACTIVE,
            Merchant.mercury_customer_id.isnot(None),
            Merchant.billing_email.isnot(None),
        )
    )
    merchant_ids = [merchant.id for merchant in result.scalars().all()]

    invoiced: List[Dict[str, Any]] = []
    skipped: List[Dict[str, Any]] = []
    for merchant_id in merchant_ids:
        merchant = await db.get(Merchant, merchant_id)
        wallet = await get_wallet(db, merchant.id, "USD")
        if not wallet:
            skipped.append({"merchantId": merchant.id, "reason": "no_wallet"})
            continue

        available = wallet.available_cents - COMPLIANCE_RESERVE_CENTS
        if available >= (merchant.low_balance_threshold_cents or 0):
            continue
        if await has_open_invoice(db, merchant.id):
            skipped.append({"merchantId": merchant.id, "reason": "open_invoice_exists"})
            continue

        try:
            invoice = await create_wallet_invoice(db, mercury, merchant, email_client=email_client)
            await db.commit()
        except (ServiceError, ApiError) as e:
            await db.rollback()
            logger.error(f"❌ 自动开票失败 merchant={merchant_id}: {e}")
            skipped.append({"merchantId": merchant_id, "reason": f"api_error: {e}"})
            continue
        invoiced.append({"merchantId": merchant.id, "amount": invoice.amount_cents})

    if invoiced:
        await create_audit_event(
            db, "mercury.auto_invoice_batch", "system", "mercury-check-balances",
            metadata={
                "merchants_checked": len(merchant_ids),
                "invoices_created": len(invoiced),
                "merchants_skipped": len(skipped),
                "invoiced": invoiced,
            },
        )
        await db.commit()

    summary = {"merchantsChecked": len(merchant_ids), "invoicesCreated": len(invoiced), "skipped": len(skipped)}
    logger.info(f"🔄 Mercury 余额检查完成: {summary}")
    return summary
