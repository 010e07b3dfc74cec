"""
提现审核

商户申请时已扣除全部可用余额（USD_WITHDRAWAL_REQUESTED）：
- COMPLETED：记一条完成流水（金额 0），商户永久关闭
- REJECTED：退回已扣金额，商户恢复 ACTIVE
"""

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.deps import AdminContext, get_db, require_admin
from portal.models.merchant import Merchant, MerchantStatus
from portal.models.wallet import WalletTransactionType, WithdrawalRequest, WithdrawalStatus
from portal.schemas.admin import WithdrawalUpdate
from portal.services.audit import client_ip, create_audit_event
from portal.services.wallet import adjust_balance

logger = logging.getLogger(__name__)

router = APIRouter()


def build_withdrawal_response(withdrawal: WithdrawalRequest, merchant: Optional[Merchant]) -> dict:
    return {
        "id": withdrawal.id,
        "merchant_id": withdrawal.merchant_id,
        "merchant_name": merchant.display_name if merchant else "Unknown",
        "amount_cents": withdrawal.amount_cents,
        "currency": withdrawal.currency,
        "payout_email": withdrawal.payout_email,
        "status": withdrawal.status,
        "admin_notes": withdrawal.admin_notes,
        "processed_by": withdrawal.processed_by,
        "completed_at": withdrawal.completed_at,
        "created_at": withdrawal.created_at,
    }


@router.get("")
async def list_withdrawals(
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    status: Optional[str] = Query(None),
) -> Any:
    query = select(WithdrawalRequest, Merchant).outerjoin(Merchant, Merchant.id == WithdrawalRequest.merchant_id)
    if status:
        query = query.where(WithdrawalRequest.status == status)
    rows = await db.execute(query.order_by(WithdrawalRequest.created_at.desc()).limit(100))
    return {"data": [build_withdrawal_response(w, m) for w, m in rows.all()]}


@router.patch("")
async def update_withdrawal(
    *,
    request: Request,
    payload: WithdrawalUpdate,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    withdrawal = await db.get(WithdrawalRequest, payload.id)
    if not withdrawal:
        raise HTTPException(status_code=404, detail="Withdrawal request not found")
    if withdrawal.status in WithdrawalStatus.FINAL:
        raise HTTPException(status_code=400, detail=f"Withdrawal is already {withdrawal.status.lower()}")

    merchant = await db.get(Merchant, withdrawal.merchant_id)
    previous = withdrawal.status
    withdrawal.status = payload.status
    withdrawal.processed_by = context.email
    if payload.admin_notes:
        withdrawal.admin_notes = payload.admin_notes

    if payload.status == WithdrawalStatus.COMPLETED:
        withdrawal.completed_at = datetime.utcnow()
        await adjust_balance(
            db, withdrawal.merchant_id, 0, WalletTransactionType.USD_WITHDRAWAL_COMPLETED,
            reference_type="withdrawal_request",
            reference_id=withdrawal.id,
            description=f"{withdrawal.currency} withdrawal completed",
            idempotency_key=f"withdrawal-{withdrawal.id}",
            metadata={"amount_cents": withdrawal.amount_cents, "destination": withdrawal.payout_email},
            currency=withdrawal.currency or "USD",
            create_wallet=True,
        )
        if merchant:
            merchant.status = MerchantStatus.CLOSED
    elif payload.status == WithdrawalStatus.REJECTED:
        if withdrawal.amount_cents:
            await adjust_balance(
                db, withdrawal.merchant_id, withdrawal.amount_cents, WalletTransactionType.ADJUSTMENT,
                reference_type="withdrawal_request",
                reference_id=withdrawal.id,
                description="Withdrawal request rejected, funds returned",
                idempotency_key=f"withdraw-reject-{withdrawal.id}",
                currency=withdrawal.currency or "USD",
                create_wallet=True,
            )
        if merchant and merchant.status == MerchantStatus.CLOSING:
            merchant.status = MerchantStatus.ACTIVE

    await create_audit_event(
        db, f"admin.withdrawal_{payload.status.lower()}", "withdrawal_request", withdrawal.id,
        merchant_id=withdrawal.merchant_id,
        actor_user_id=context.admin.user_id,
        actor_email=context.email,
        old_values={"status": previous},
        new_values={"status": payload.status},
        metadata={"currency": withdrawal.currency, "amount_cents": withdrawal.amount_cents},
        ip_address=client_ip(request),
    )
    await db.commit()
    logger.info(f"🏧 提现状态: {withdrawal.id} {previous} → {payload.status}")
    return {"data": {"id": withdrawal.id, "status": withdrawal.status}}
