"""
Mercury Webhook

作为轮询之外的补充：入账交易或余额变动时立即同步发票。
签名为原始请求体的 HMAC-SHA256 十六进制，放在 x-mercury-signature 或 x-signature。
"""

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.core.deps import get_db
from portal.core.errors import ApiError
from portal.core.security import verify_webhook_signature, webhook_idempotency_key
from portal.models.billing import MercuryInvoice, MercuryInvoiceStatus
from portal.models.system import WebhookEvent, WebhookEventStatus
from portal.services.email import EmailClient, get_email_client
from portal.services.errors import ServiceError
from portal.services.mercury import MercuryClient, get_mercury_client
from portal.services.mercury_billing import sync_invoices

logger = logging.getLogger(__name__)

router = APIRouter()

TRANSACTION_EVENTS = ("transaction.created", "transaction.updated")
BALANCE_EVENTS = ("checkingAccount.balance.updated",)


async def _has_matching_open_invoice(db: AsyncSession, event: Dict[str, Any]) -> bool:
    """入账金额（美元）与某张未结清发票金额一致"""
    transaction = event.get("data") or event
    amount = transaction.get("amount")
    if not isinstance(amount, (int, float)) or amount <= 0:
        return False
    amount_cents = round(amount * 100)
    result = await db.execute(
        select(MercuryInvoice.id).where(
            MercuryInvoice.status.in_(MercuryInvoiceStatus.OPEN),
            MercuryInvoice.wallet_credited.is_(False),
            MercuryInvoice.amount_cents == amount_cents,
        ).limit(1)
    )
    return result.first() is not None


@router.post("/mercury")
async def mercury_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    mercury: MercuryClient = Depends(get_mercury_client),
    email_client: EmailClient = Depends(get_email_client),
) -> Any:
    if not settings.MERCURY_WEBHOOK_SECRET:
        logger.error("❌ 未配置 MERCURY_WEBHOOK_SECRET，拒绝 webhook")
        raise HTTPException(status_code=503, detail="Webhook secret not configured")

    raw_body = await request.body()
    signature = request.headers.get("x-mercury-signature") or request.headers.get("x-signature")
    if not signature or not verify_webhook_signature(raw_body, signature, settings.MERCURY_WEBHOOK_SECRET):
        logger.warning("⚠️ Mercury webhook 签名校验失败")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    event_type = event.get("type") or event.get("eventType") or "unknown"
    event_id = str(event.get("id") or int(time.time() * 1000))
    key = webhook_idempotency_key("mercury", event_id, event_type)

    existing = (await db.execute(select(WebhookEvent).where(WebhookEvent.idempotency_key == key))).scalars().first()
    if existing:
        logger.info(f"Mercury webhook 重复推送，忽略: {key}")
        return {"received": True, "duplicate": True}

    webhook_event = WebhookEvent(
        source="mercury",
        event_id=event_id,
        event_type=event_type,
        idempotency_key=key,
        payload=event,
        status=WebhookEventStatus.PROCESSING,
        attempts=1,
    )
    db.add(webhook_event)
    await db.commit()
    event_row_id = webhook_event.id

    should_sync = False
    if event_type in TRANSACTION_EVENTS:
        should_sync = await _has_matching_open_invoice(db, event)
    elif event_type in BALANCE_EVENTS:
        should_sync = True
    else:
        logger.info(f"未处理的 Mercury 事件类型: {event_type}")

    error = None
    if should_sync and mercury.configured:
        try:
            await sync_invoices(db, mercury, email_client)
        except (ServiceError, ApiError) as e:
            await db.rollback()
            error = str(e)
            logger.error(f"❌ Mercury webhook 触发同步失败 {key}: {e}")

    webhook_event = await db.get(WebhookEvent, event_row_id)
    webhook_event.processed_at = datetime.utcnow()
    if error:
        webhook_event.status = WebhookEventStatus.FAILED
        webhook_event.last_error = error
    else:
        webhook_event.status = WebhookEventStatus.COMPLETED
    await db.commit()

    if error:
        raise HTTPException(status_code=500, detail="Webhook processing failed")
    return {"received": True, "synced": should_sync and mercury.configured}
