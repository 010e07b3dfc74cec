"""
商户钱包与账单

- 钱包余额与流水
- Mercury 充值发票
- 账单设置（低余额阈值 / 目标余额）
- 提现：提取全部可用余额并关闭账户
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.core.deps import MerchantContext, get_db, get_merchant_context, require_merchant_role
from portal.models.billing import MercuryInvoice
from portal.models.merchant import MerchantRole, MerchantStatus
from portal.models.wallet import WalletTransaction, WalletTransactionType, WithdrawalRequest, WithdrawalStatus
from portal.schemas.merchant import BillingSettingsUpdate
from portal.services.audit import client_ip, create_audit_event
from portal.services.email import EmailClient, get_email_client, withdrawal_request_email
from portal.services.wallet import adjust_balance, get_wallet, wallet_summary

logger = logging.getLogger(__name__)

router = APIRouter()

MIN_BILLING_AMOUNT_CENTS = 10000


@router.get("/wallet")
async def get_wallet_overview(
    *,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(get_merchant_context),
    limit: int = Query(50, ge=1, le=200),
) -> Any:
    wallet = await get_wallet(db, context.merchant_id, "USD")
    transactions = (await db.execute(
        select(WalletTransaction)
        .where(WalletTransaction.merchant_id == context.merchant_id)
        .order_by(WalletTransaction.created_at.desc())
        .limit(limit)
    )).scalars().all()
    return {
        "data": {
            **wallet_summary(wallet),
            "currency": "USD",
            "transactions": [
                {
                    "id": t.id,
                    "type": t.type,
                    "amount_cents": t.amount_cents,
                    "balance_after_cents": t.balance_after_cents,
                    "reference_type": t.reference_type,
                    "reference_id": t.reference_id,
                    "description": t.description,
                    "created_at": t.created_at,
                }
                for t in transactions
            ],
        }
    }


@router.get("/invoices")
async def list_invoices(
    *,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(get_merchant_context),
) -> Any:
    invoices = (await db.execute(
        select(MercuryInvoice)
        .where(MercuryInvoice.merchant_id == context.merchant_id)
        .order_by(MercuryInvoice.created_at.desc())
    )).scalars().all()
    return {
        "data": [
            {
                "id": inv.id,
                "invoice_number": inv.invoice_number,
                "amount_cents": inv.amount_cents,
                "status": inv.status,
                "due_date": inv.due_date.isoformat() if inv.due_date else None,
                "payment_url": inv.payment_url,
                "paid_at": inv.paid_at,
                "created_at": inv.created_at,
            }
            for inv in invoices
        ]
    }


def _billing_settings(merchant) -> dict:
    return {
        "billing_email": merchant.billing_email or merchant.email,
        "billing_name": merchant.billing_name or merchant.display_name,
        "low_balance_threshold_cents": merchant.low_balance_threshold_cents,
        "target_balance_cents": merchant.target_balance_cents,
        "mercury_customer_id": merchant.mercury_customer_id,
    }


@router.get("/billing-settings")
async def get_billing_settings(context: MerchantContext = Depends(get_merchant_context)) -> Any:
    return {"data": _billing_settings(context.merchant)}


@router.patch("/billing-settings")
async def update_billing_settings(
    *,
    request: Request,
    payload: BillingSettingsUpdate,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(require_merchant_role(MerchantRole.ADMIN)),
) -> Any:
    """阈值、目标余额均不低于 $100，且目标余额不低于阈值"""
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")

    merchant = context.merchant
    threshold = updates.get("low_balance_threshold_cents", merchant.low_balance_threshold_cents)
    target = updates.get("target_balance_cents", merchant.target_balance_cents)
    if "low_balance_threshold_cents" in updates and (threshold is None or threshold < MIN_BILLING_AMOUNT_CENTS):
        raise HTTPException(status_code=400, detail="Threshold must be at least $100")
    if "target_balance_cents" in updates and (target is None or target < MIN_BILLING_AMOUNT_CENTS):
        raise HTTPException(status_code=400, detail="Target balance must be at least $100")
    if threshold is not None and target is not None and target < threshold:
        raise HTTPException(status_code=400, detail="Target balance must be at least equal to the threshold")

    old_values = {key: getattr(merchant, key) for key in updates}
    for key, value in updates.items():
        setattr(merchant, key, value)
    await create_audit_event(
        db, "merchant.billing_settings_updated", "merchant", merchant.id,
        merchant_id=merchant.id,
        actor_user_id=context.user.id,
        actor_email=context.user.email,
        old_values=old_values,
        new_values=updates,
        ip_address=client_ip(request),
    )
    await db.commit()
    return {"success": True, "data": _billing_settings(merchant)}


@router.post("/withdraw")
async def request_withdrawal(
    *,
    request: Request,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(require_merchant_role(MerchantRole.OWNER)),
    email_client: EmailClient = Depends(get_email_client),
) -> Any:
    """
    申请提现

    提取全部可用余额（余额 - 预留），立即扣款并将商户置为 CLOSING，等待管理员处理。
    """
    merchant = context.merchant
    if merchant.is_closed_or_closing:
        raise HTTPException(status_code=400, detail="Account is already closing or closed")

    wallet = await get_wallet(db, merchant.id, "USD", lock=True)
    amount = wallet.available_cents if wallet else 0
    if amount <= 0:
        raise HTTPException(status_code=400, detail="No available balance to withdraw")

    payout_email = merchant.billing_email or merchant.email
    withdrawal = WithdrawalRequest(
        merchant_id=merchant.id,
        amount_cents=amount,
        currency="USD",
        payout_email=payout_email,
        status=WithdrawalStatus.PENDING_ADMIN,
    )
    db.add(withdrawal)
    await db.flush()

    await adjust_balance(
        db, merchant.id, -amount, WalletTransactionType.USD_WITHDRAWAL_REQUESTED,
        reference_type="withdrawal_request",
        reference_id=withdrawal.id,
        description="Full balance withdrawal requested",
        idempotency_key=f"withdraw-req-{withdrawal.id}",
        metadata={"payout_email": payout_email},
    )
    previous_status = merchant.status
    merchant.status = MerchantStatus.CLOSING

    await create_audit_event(
        db, "merchant.withdrawal_requested", "withdrawal_request", withdrawal.id,
        merchant_id=merchant.id,
        actor_user_id=context.user.id,
        actor_email=context.user.email,
        old_values={"status": previous_status},
        new_values={"status": MerchantStatus.CLOSING, "amount_cents": amount},
        ip_address=client_ip(request),
    )
    await db.commit()
    logger.info(f"🏧 提现申请: merchant={merchant.id} amount={amount}")

    subject, body = withdrawal_request_email(merchant.display_name, merchant.email, amount, withdrawal.id)
    await email_client.send_safely(settings.WITHDRAWAL_NOTIFY_EMAIL, subject, body)

    return {
        "success": True,
        "data": {"id": withdrawal.id, "amount_cents": amount, "status": withdrawal.status},
    }
