"""
Mercury 发票管理（管理端）

- GET  /invoices   发票列表 + 商户账单概览
- POST /invoices   手动开票；?action=cancel&id= 取消未付发票
- GET  /account    Mercury 收款账户概况
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from portal.core.deps import AdminContext, get_db, require_admin
from portal.models.billing import MercuryInvoice, MercuryInvoiceStatus
from portal.models.merchant import Merchant, MerchantStatus
from portal.models.wallet import WalletAccount
from portal.schemas.admin import InvoiceCreate
from portal.services.audit import client_ip, create_audit_event
from portal.services.email import EmailClient, get_email_client
from portal.services.mercury import MercuryClient, get_mercury_client
from portal.services.mercury_billing import cancel_wallet_invoice, create_wallet_invoice

logger = logging.getLogger(__name__)

router = APIRouter()

INVOICE_LIST_LIMIT = 100


def build_invoice_response(invoice: MercuryInvoice, merchant: Optional[Merchant]) -> dict:
    return {
        "id": invoice.id,
        "merchant_id": invoice.merchant_id,
        "merchant_name": merchant.display_name if merchant else "Unknown",
        "merchant_email": (merchant.billing_email or "") if merchant else "",
        "mercury_invoice_id": invoice.mercury_invoice_id,
        "mercury_slug": invoice.mercury_slug,
        "invoice_number": invoice.invoice_number,
        "amount_cents": invoice.amount_cents,
        "status": invoice.status,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
        "payment_url": invoice.payment_url,
        "wallet_credited": bool(invoice.wallet_credited),
        "created_at": invoice.created_at,
    }


@router.get("/invoices")
async def list_invoices(
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    invoices = (await db.execute(
        select(MercuryInvoice).order_by(MercuryInvoice.created_at.desc()).limit(INVOICE_LIST_LIMIT)
    )).scalars().all()

    merchants = (await db.execute(
        select(Merchant).where(Merchant.status == MerchantStatus.ACTIVE, Merchant.mercury_customer_id.isnot(None))
    )).scalars().all()
    merchant_map = {m.id: m for m in merchants}
    missing = {inv.merchant_id for inv in invoices} - set(merchant_map)
    if missing:
        extra = (await db.execute(select(Merchant).where(Merchant.id.in_(missing)))).scalars().all()
        merchant_map.update({m.id: m for m in extra})

    wallets = {}
    pending_counts = {}
    if merchants:
        merchant_ids = [m.id for m in merchants]
        wallet_rows = await db.execute(select(WalletAccount).where(WalletAccount.merchant_id.in_(merchant_ids)))
        wallets = {w.merchant_id: w for w in wallet_rows.scalars().all()}
        count_rows = await db.execute(
            select(MercuryInvoice.merchant_id, func.count(MercuryInvoice.id))
            .where(MercuryInvoice.status.in_(MercuryInvoiceStatus.OPEN), MercuryInvoice.merchant_id.in_(merchant_ids))
            .group_by(MercuryInvoice.merchant_id)
        )
        pending_counts = {merchant_id: count for merchant_id, count in count_rows.all()}

    overview = []
    for merchant in merchants:
        wallet = wallets.get(merchant.id)
        overview.append({
            "id": merchant.id,
            "name": merchant.display_name,
            "billing_email": merchant.billing_email or "",
            "low_balance_threshold_cents": merchant.low_balance_threshold_cents,
            "target_balance_cents": merchant.target_balance_cents,
            "balance_cents": wallet.balance_cents if wallet else 0,
            "reserved_cents": wallet.reserved_cents if wallet else 0,
            "pending_invoice_count": pending_counts.get(merchant.id, 0),
        })

    return {
        "data": {
            "invoices": [build_invoice_response(inv, merchant_map.get(inv.merchant_id)) for inv in invoices],
            "merchants": overview,
        }
    }


@router.post("/invoices")
async def create_or_cancel_invoice(
    *,
    request: Request,
    payload: Optional[InvoiceCreate] = None,
    action: Optional[str] = Query(None),
    id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    mercury: MercuryClient = Depends(get_mercury_client),
    email_client: EmailClient = Depends(get_email_client),
) -> Any:
    if not mercury.configured:
        raise HTTPException(status_code=503, detail="Mercury API not configured")

    if action == "cancel":
        if not id:
            raise HTTPException(status_code=400, detail="Invoice ID required")
        invoice = await db.get(MercuryInvoice, id)
        if not invoice:
            raise HTTPException(status_code=400, detail="Invoice not found or not cancellable")
        await cancel_wallet_invoice(db, mercury, invoice)
        await create_audit_event(
            db, "mercury.invoice_cancelled", "mercury_invoice", invoice.id,
            merchant_id=invoice.merchant_id,
            actor_email=context.email,
            ip_address=client_ip(request),
        )
        await db.commit()
        logger.info(f"🧾 发票已取消: {invoice.mercury_invoice_id}")
        return {"success": True}

    if payload is None or not payload.merchant_id:
        raise HTTPException(status_code=400, detail="Merchant ID required")
    merchant = await db.get(Merchant, payload.merchant_id)
    if not merchant or not merchant.mercury_customer_id:
        raise HTTPException(status_code=400, detail="Merchant not found or Mercury not configured")

    invoice = await create_wallet_invoice(db, mercury, merchant, payload.amount_cents, email_client=email_client)
    await create_audit_event(
        db, "mercury.invoice_created", "mercury_invoice", invoice.id,
        merchant_id=merchant.id,
        actor_email=context.email,
        metadata={"amount_cents": invoice.amount_cents, "mercury_invoice_id": invoice.mercury_invoice_id, "manual": True},
        ip_address=client_ip(request),
    )
    await db.commit()
    return {
        "success": True,
        "data": {
            "id": invoice.id,
            "mercury_invoice_id": invoice.mercury_invoice_id,
            "amount_cents": invoice.amount_cents,
            "payment_url": invoice.payment_url,
        },
    }


@router.get("/account")
async def get_account(
    *,
    context: AdminContext = Depends(require_admin),
    mercury: MercuryClient = Depends(get_mercury_client),
) -> Any:
    if not mercury.configured:
        return {"data": {"name": "Not Configured", "availableBalance": 0, "currentBalance": 0, "status": "unconfigured"}}
    account = await mercury.get_account()
    return {
        "data": {
            "name": account.get("name"),
            "availableBalance": account.get("availableBalance"),
            "currentBalance": account.get("currentBalance"),
            "status": account.get("status"),
        }
    }
