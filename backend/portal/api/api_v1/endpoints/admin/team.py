"""后台团队管理 - 管理员列表、邀请、启停用"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.core.deps import AdminContext, get_db, require_admin, require_super_admin
from portal.core.rate_limit import check_rate_limit
from portal.core.security import generate_invitation_token
from portal.models.admin import AdminRole, AdminUser, Invitation, InvitationStatus
from portal.schemas.admin import TeamInvite, TeamMemberUpdate
from portal.services.audit import create_audit_event
from portal.services.email import EmailClient, get_email_client, invitation_email

logger = logging.getLogger(__name__)

router = APIRouter()

INVITATION_TTL = timedelta(days=7)


def build_admin_response(admin: AdminUser) -> Dict[str, Any]:
    return {
        "id": admin.id,
        "user_id": admin.user_id,
        "email": admin.email,
        "name": admin.name,
        "role": admin.role,
        "is_active": admin.is_active,
        "last_login_at": admin.last_login_at,
        "created_at": admin.created_at,
    }


def build_invitation_response(invitation: Invitation) -> Dict[str, Any]:
    return {
        "id": invitation.id,
        "scope": invitation.scope,
        "merchant_id": invitation.merchant_id,
        "email": invitation.email,
        "role": invitation.role,
        "status": invitation.status,
        "expires_at": invitation.expires_at,
        "created_at": invitation.created_at,
    }


@router.get("")
async def list_team(
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    """管理员 + 待接受的管理员邀请"""
    admins = (await db.execute(select(AdminUser).order_by(AdminUser.created_at.asc()))).scalars().all()
    invitations = (await db.execute(
        select(Invitation)
        .where(Invitation.scope == "admin", Invitation.status == InvitationStatus.PENDING)
        .order_by(Invitation.created_at.desc())
    )).scalars().all()
    return {
        "admins": [build_admin_response(a) for a in admins],
        "invitations": [build_invitation_response(i) for i in invitations],
    }


@router.post("/invite", status_code=201)
async def invite_admin(
    *,
    payload: TeamInvite,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_super_admin),
    email_client: EmailClient = Depends(get_email_client),
) -> Any:
    check_rate_limit(f"invite:admin:{context.email}", "invite")

    email = payload.email
    if payload.role != AdminRole.ADMIN:
        raise HTTPException(status_code=400, detail="Invalid role.")

    if (await db.execute(select(AdminUser.id).where(AdminUser.email == email))).first():
        raise HTTPException(status_code=409, detail="This email is already an admin.")
    pending = await db.execute(
        select(Invitation.id).where(
            Invitation.email == email,
            Invitation.scope == "admin",
            Invitation.status == InvitationStatus.PENDING,
        )
    )
    if pending.first():
        raise HTTPException(status_code=409, detail="An invitation is already pending for this email.")

    invitation = Invitation(
        scope="admin",
        email=email,
        role=payload.role,
        token=generate_invitation_token(),
        status=InvitationStatus.PENDING,
        invited_by=context.admin.user_id or context.admin.id,
        expires_at=datetime.utcnow() + INVITATION_TTL,
    )
    db.add(invitation)
    await db.flush()
    await create_audit_event(
        db, "admin_team.invite_sent", "invitation", invitation.id,
        actor_user_id=context.admin.user_id,
        actor_email=context.email,
        new_values={"email": email, "role": payload.role},
    )
    await db.commit()

    accept_url = f"{settings.APP_URL}/auth/accept-invite?token={invitation.token}"
    subject, body = invitation_email("admin", accept_url, role=payload.role)
    await email_client.send_safely(email, subject, body)
    logger.info(f"✉️ 管理员邀请已发送: {email}")

    return build_invitation_response(invitation)


@router.delete("/invite/{invitation_id}")
async def revoke_invitation(
    invitation_id: str,
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_super_admin),
) -> Any:
    invitation = await db.get(Invitation, invitation_id)
    if not invitation or invitation.scope != "admin" or invitation.status != InvitationStatus.PENDING:
        raise HTTPException(status_code=404, detail="Pending invitation not found.")

    invitation.status = InvitationStatus.REVOKED
    await create_audit_event(
        db, "admin_team.invite_revoked", "invitation", invitation.id,
        actor_email=context.email,
        old_values={"email": invitation.email},
    )
    await db.commit()
    return {"success": True}


@router.patch("/{admin_id}")
async def update_admin(
    admin_id: str,
    *,
    payload: TeamMemberUpdate,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_super_admin),
) -> Any:
    """超级管理员调整角色或启停用（不能停用自己）"""
    target = await db.get(AdminUser, admin_id)
    if not target:
        raise HTTPException(status_code=404, detail="Admin user not found.")

    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No valid fields to update.")
    if target.id == context.admin.id and (updates.get("is_active") is False or updates.get("role") == AdminRole.ADMIN):
        raise HTTPException(status_code=403, detail="Cannot deactivate or demote yourself.")

    old_values = {key: getattr(target, key) for key in updates}
    for key, value in updates.items():
        setattr(target, key, value)

    await create_audit_event(
        db, "admin_team.updated", "admin_user", target.id,
        actor_email=context.email,
        old_values=old_values,
        new_values=updates,
    )
    await db.commit()
    return build_admin_response(target)
