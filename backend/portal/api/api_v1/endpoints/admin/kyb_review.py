"""KYB 审核"""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.deps import AdminContext, get_db, require_admin
from portal.models.merchant import KybStatus, Merchant, MerchantStatus
from portal.models.system import NotificationType
from portal.schemas.merchant import KybReviewAction, MerchantResponse
from portal.services.audit import client_ip, create_audit_event
from portal.services.email import EmailClient, get_email_client, kyb_approved_email, kyb_rejected_email
from portal.services.errors import MercuryError
from portal.services.mercury import MercuryClient, get_mercury_client
from portal.services.mercury_billing import ensure_mercury_customer
from portal.services.notifications import create_notification

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def list_pending_kyb(
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    """待审核商户（按注册时间先后）"""
    result = await db.execute(
        select(Merchant)
        .where(Merchant.kyb_status.in_(KybStatus.PENDING_REVIEW))
        .order_by(Merchant.created_at.asc())
    )
    approved_count = (await db.execute(
        select(func.count(Merchant.id)).where(Merchant.kyb_status == KybStatus.APPROVED)
    )).scalar() or 0
    return {
        "data": [MerchantResponse.model_validate(m) for m in result.scalars().all()],
        "stats": {"approvedCount": approved_count},
    }


@router.post("")
async def review_kyb(
    *,
    request: Request,
    payload: KybReviewAction,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    mercury: MercuryClient = Depends(get_mercury_client),
    email_client: EmailClient = Depends(get_email_client),
) -> Any:
    """
    审核通过：ACTIVE + 允许发货，并在 Mercury 建客户（失败不影响审核）
    驳回：SUSPENDED + 禁止发货
    """
    merchant = await db.get(Merchant, payload.merchant_id)
    if not merchant:
        raise HTTPException(status_code=404, detail="Merchant not found")

    old_values = {"status": merchant.status, "kyb_status": merchant.kyb_status, "can_ship": merchant.can_ship}
    merchant.kyb_reviewed_at = datetime.utcnow()

    if payload.action == "approve":
        merchant.kyb_status = KybStatus.APPROVED
        merchant.status = MerchantStatus.ACTIVE
        merchant.can_ship = True
        merchant.kyb_rejection_reason = None

        customer_created = False
        if mercury.configured and not merchant.mercury_customer_id:
            try:
                await ensure_mercury_customer(mercury, merchant)
                customer_created = True
            except MercuryError as e:
                logger.error(f"❌ Mercury 客户创建失败 merchant={merchant.id}: {e}")

        await create_notification(
            db, merchant.id, NotificationType.KYB_APPROVED,
            "Account Approved", "Your business verification has been approved. You can now start shipping orders.",
        )
        await create_audit_event(
            db, "kyb.approved", "merchant", merchant.id,
            merchant_id=merchant.id,
            actor_user_id=context.admin.user_id,
            actor_email=context.email,
            old_values=old_values,
            new_values={"status": merchant.status, "kyb_status": merchant.kyb_status, "can_ship": True},
            metadata={"mercury_customer_created": customer_created},
            ip_address=client_ip(request),
        )
        await db.commit()
        logger.info(f"✅ KYB 审核通过: merchant={merchant.id}")

        subject, body = kyb_approved_email(merchant.display_name)
        await email_client.send_safely(merchant.email, subject, body)
        return {"success": True, "action": "approved", "mercury_customer_id": merchant.mercury_customer_id}

    reason = payload.reason or "Not specified"
    merchant.kyb_status = KybStatus.REJECTED
    merchant.status = MerchantStatus.SUSPENDED
    merchant.can_ship = False
    merchant.kyb_rejection_reason = reason

    await create_notification(
        db, merchant.id, NotificationType.KYB_REJECTED,
        "Verification Not Approved", reason,
    )
    await create_audit_event(
        db, "kyb.rejected", "merchant", merchant.id,
        merchant_id=merchant.id,
        actor_user_id=context.admin.user_id,
        actor_email=context.email,
        old_values=old_values,
        new_values={"status": merchant.status, "kyb_status": merchant.kyb_status, "can_ship": False},
        metadata={"reason": reason},
        ip_address=client_ip(request),
    )
    await db.commit()
    logger.info(f"⛔ KYB 驳回: merchant={merchant.id} reason={reason}")

    subject, body = kyb_rejected_email(merchant.display_name, payload.reason)
    await email_client.send_safely(merchant.email, subject, body)
    return {"success": True, "action": "rejected"}
