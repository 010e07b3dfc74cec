"""商户团队：成员列表、邀请、撤销邀请、成员角色/启停用"""

import logging
from datetime import datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.core.deps import MerchantContext, get_db, get_merchant_context, require_merchant_role
from portal.core.rate_limit import check_rate_limit
from portal.core.security import generate_invitation_token
from portal.models.admin import Invitation, InvitationStatus
from portal.models.merchant import MerchantRole, MerchantUser
from portal.schemas.merchant import MerchantInvite, MerchantMemberUpdate
from portal.services.audit import client_ip, create_audit_event
from portal.services.email import EmailClient, get_email_client, invitation_email

from ..admin.team import build_invitation_response

logger = logging.getLogger(__name__)

router = APIRouter()

INVITATION_TTL = timedelta(days=7)
INVITABLE_ROLES = (MerchantRole.ADMIN, MerchantRole.USER)


def build_member_response(member: MerchantUser) -> dict:
    return {
        "id": member.id,
        "user_id": member.user_id,
        "email": member.email,
        "role": member.role,
        "is_active": member.is_active,
        "invited_at": member.invited_at,
    }


@router.get("")
async def list_team(
    *,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(get_merchant_context),
) -> Any:
    merchant = context.merchant
    members = (await db.execute(
        select(MerchantUser).where(MerchantUser.merchant_id == merchant.id).order_by(MerchantUser.email.asc())
    )).scalars().all()
    invitations = (await db.execute(
        select(Invitation).where(
            Invitation.scope == "merchant",
            Invitation.merchant_id == merchant.id,
            Invitation.status == InvitationStatus.PENDING,
        ).order_by(Invitation.created_at.desc())
    )).scalars().all()
    return {
        "owner": {"user_id": merchant.user_id, "email": merchant.email, "role": MerchantRole.OWNER},
        "members": [build_member_response(m) for m in members],
        "invitations": [build_invitation_response(i) for i in invitations],
        "currentRole": context.role,
    }


@router.post("/invite", status_code=201)
async def invite_member(
    *,
    request: Request,
    payload: MerchantInvite,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(require_merchant_role(MerchantRole.ADMIN)),
    email_client: EmailClient = Depends(get_email_client),
) -> Any:
    check_rate_limit(f"invite:merchant:{context.merchant_id}", "invite")

    email = payload.email
    if payload.role not in INVITABLE_ROLES:
        raise HTTPException(status_code=400, detail="Invalid role.")
    if payload.role == MerchantRole.ADMIN and context.role != MerchantRole.OWNER:
        raise HTTPException(status_code=403, detail="Only the account owner can invite admins.")

    merchant = context.merchant
    if email == (merchant.email or "").lower():
        raise HTTPException(status_code=409, detail="This email already belongs to the account owner.")
    existing = await db.execute(
        select(MerchantUser.id).where(MerchantUser.merchant_id == merchant.id, func.lower(MerchantUser.email) == email)
    )
    if existing.first():
        raise HTTPException(status_code=409, detail="This email is already a team member.")
    pending = await db.execute(
        select(Invitation.id).where(
            Invitation.scope == "merchant",
            Invitation.merchant_id == merchant.id,
            Invitation.email == email,
            Invitation.status == InvitationStatus.PENDING,
        )
    )
    if pending.first():
        raise HTTPException(status_code=409, detail="An invitation is already pending for this email.")

    invitation = Invitation(
        scope="merchant",
        merchant_id=merchant.id,
        email=email,
        role=payload.role,
        token=generate_invitation_token(),
        status=InvitationStatus.PENDING,
        invited_by=context.user.id,
        expires_at=datetime.utcnow() + INVITATION_TTL,
    )
    db.add(invitation)
    await db.flush()
    await create_audit_event(
        db, "team.invite_sent", "invitation", invitation.id,
        merchant_id=merchant.id,
        actor_user_id=context.user.id,
        actor_email=context.user.email,
        new_values={"email": email, "role": payload.role},
        ip_address=client_ip(request),
    )
    await db.commit()

    accept_url = f"{settings.APP_URL}/auth/accept-invite?token={invitation.token}"
    subject, body = invitation_email("merchant", accept_url, merchant_name=merchant.display_name, role=payload.role)
    await email_client.send_safely(email, subject, body)
    logger.info(f"✉️ 商户邀请已发送: merchant={merchant.id} email={email}")

    return build_invitation_response(invitation)


@router.delete("/invite/{invitation_id}")
async def revoke_invitation(
    invitation_id: str,
    *,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(require_merchant_role(MerchantRole.ADMIN)),
) -> Any:
    invitation = await db.get(Invitation, invitation_id)
    if (
        not invitation
        or invitation.scope != "merchant"
        or invitation.merchant_id != context.merchant_id
        or invitation.status != InvitationStatus.PENDING
    ):
        raise HTTPException(status_code=404, detail="Pending invitation not found.")

    invitation.status = InvitationStatus.REVOKED
    await create_audit_event(
        db, "team.invite_revoked", "invitation", invitation.id,
        merchant_id=context.merchant_id,
        actor_user_id=context.user.id,
        actor_email=context.user.email,
        old_values={"email": invitation.email},
    )
    await db.commit()
    return {"success": True}


@router.patch("/{member_id}")
async def update_member(
    member_id: str,
    *,
    payload: MerchantMemberUpdate,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(require_merchant_role(MerchantRole.OWNER)),
) -> Any:
    """仅所有者可修改成员角色或启停用"""
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update.")
    if "role" in updates and updates["role"] not in INVITABLE_ROLES:
        raise HTTPException(status_code=400, detail="Invalid role.")

    member = await db.get(MerchantUser, member_id)
    if not member or member.merchant_id != context.merchant_id:
        raise HTTPException(status_code=404, detail="Team member not found.")

    old_values = {key: getattr(member, key) for key in updates}
    for key, value in updates.items():
        setattr(member, key, value)
    await create_audit_event(
        db, "team.member_updated", "merchant_user", member.id,
        merchant_id=context.merchant_id,
        actor_user_id=context.user.id,
        actor_email=context.user.email,
        old_values=old_values,
        new_values=updates,
    )
    await db.commit()
    return build_member_response(member)
