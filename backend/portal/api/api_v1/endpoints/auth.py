"""
认证回调与邀请接受

- /auth/confirm：所有邮件链接（魔法链接、重置密码、邮箱确认）的落地页
- /auth/callback：后台登录 OAuth/PKCE 回调
- /api/v1/auth/accept-invite：查看 / 接受团队邀请

会话本身由 Supabase 维护，这里只根据参数分支并决定跳转目标。
"""

import logging
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.deps import ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, get_current_user, get_db
from portal.models.admin import AdminUser, Invitation, InvitationStatus
from portal.models.merchant import Merchant, MerchantUser
from portal.services.audit import create_audit_event
from portal.services.errors import SupabaseError
from portal.services.supabase import AuthSession, AuthUser, SupabaseAuthClient, get_auth_client

logger = logging.getLogger(__name__)

# 挂载在 /auth（不带 API 前缀）
redirect_router = APIRouter()
# 挂载在 /api/v1/auth
router = APIRouter()

RESET_PASSWORD_PATH = "/auth/reset-password"
SESSION_COOKIE_MAX_AGE = 60 * 60 * 24 * 7


def _redirect(request: Request, path: str, auth_session: Optional[AuthSession] = None) -> RedirectResponse:
    origin = str(request.base_url).rstrip("/")
    response = RedirectResponse(url=f"{origin}{path}", status_code=307)
    if auth_session and auth_session.access_token:
        secure = request.url.scheme == "https"
        response.set_cookie(ACCESS_TOKEN_COOKIE, auth_session.access_token, max_age=SESSION_COOKIE_MAX_AGE,
                            httponly=True, samesite="lax", secure=secure)
        if auth_session.refresh_token:
            response.set_cookie(REFRESH_TOKEN_COOKIE, auth_session.refresh_token, max_age=SESSION_COOKIE_MAX_AGE,
                                httponly=True, samesite="lax", secure=secure)
    return response


def safe_next_path(next_path: Optional[str], default: str) -> str:
    """next 只允许站内路径（单个 / 开头），否则回退默认值"""
    if not next_path or not next_path.startswith("/") or next_path.startswith("//") or "\\" in next_path:
        return default
    return next_path


def _code_verifier(request: Request) -> Optional[str]:
    """PKCE code_verifier 由前端 SDK 写入 `*-code-verifier` Cookie"""
    for name, value in request.cookies.items():
        if name.endswith("-code-verifier"):
            return value.strip('"')
    return None


def is_recovery_flow(otp_type: Optional[str], next_path: str) -> bool:
    return otp_type == "recovery" or next_path == RESET_PASSWORD_PATH or "reset-password" in next_path


async def resolve_role_redirect(db: AsyncSession, user: AuthUser, next_path: str) -> str:
    """按身份决定跳转：管理员查 admin_users（邮箱），商户查 merchants（user_id）"""
    admin = (await db.execute(
        select(AdminUser.id).where(AdminUser.email == (user.email or "").lower())
    )).first()
    merchant = (await db.execute(
        select(Merchant.id).where(Merchant.user_id == user.id)
    )).first()
    is_admin = admin is not None
    is_merchant = merchant is not None

    if next_path == "/admin" and is_admin:
        return "/admin"
    if next_path == "/dashboard" and is_merchant:
        return "/dashboard"
    if is_merchant:
        return "/dashboard"
    if is_admin:
        return "/admin"
    return "/login?error=no_account"


@redirect_router.get("/confirm")
async def auth_confirm(
    request: Request,
    code: Optional[str] = None,
    token_hash: Optional[str] = None,
    type: Optional[str] = None,
    next: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    auth_client: SupabaseAuthClient = Depends(get_auth_client),
) -> Any:
    """邮件链接落地：换取会话后按身份跳转"""
    next_path = safe_next_path(next, "/dashboard")
    recovery = is_recovery_flow(type, next_path)

    auth_session: Optional[AuthSession] = None
    error: Optional[str] = None
    try:
        if code:
            auth_session = await auth_client.exchange_code_for_session(code, _code_verifier(request))
        elif token_hash and type:
            auth_session = await auth_client.verify_otp(token_hash, type)
        else:
            error = "No code or token_hash provided"
    except SupabaseError as e:
        logger.error(f"❌ 认证确认失败: {e}")
        error = str(e)

    if error:
        if recovery:
            return _redirect(request, "/forgot-password?error=expired")
        error_path = "/admin/login" if next_path.startswith("/admin") else "/login"
        return _redirect(request, f"{error_path}?error=auth_failed")

    if recovery:
        return _redirect(request, RESET_PASSWORD_PATH, auth_session)

    if next_path not in ("/admin", "/dashboard"):
        return _redirect(request, next_path, auth_session)

    user = auth_session.user if auth_session else None
    if user is None and auth_session and auth_session.access_token:
        user = await auth_client.get_user(auth_session.access_token)
    if user:
        try:
            target = await resolve_role_redirect(db, user, next_path)
        except SQLAlchemyError as e:
            logger.error(f"❌ 认证确认角色查询失败: {e}")
        else:
            return _redirect(request, target, auth_session)

    return _redirect(request, next_path, auth_session)


@redirect_router.get("/callback")
async def auth_callback(
    request: Request,
    code: Optional[str] = None,
    token_hash: Optional[str] = None,
    type: Optional[str] = None,
    next: Optional[str] = None,
    auth_client: SupabaseAuthClient = Depends(get_auth_client),
) -> Any:
    """后台登录回调"""
    next_path = safe_next_path(next, "/admin")

    if code:
        try:
            auth_session = await auth_client.exchange_code_for_session(code, _code_verifier(request))
        except SupabaseError as e:
            logger.error(f"❌ 认证回调失败: {e}")
            return _redirect(request, "/admin/login?error=auth_failed")
        if type == "recovery":
            return _redirect(request, RESET_PASSWORD_PATH, auth_session)
        return _redirect(request, next_path, auth_session)

    if token_hash and type == "recovery":
        query = urlencode({"token_hash": token_hash, "type": type})
        return _redirect(request, f"{RESET_PASSWORD_PATH}?{query}")

    return _redirect(request, "/admin/login")


# ==================== 邀请 ====================

async def _load_pending_invitation(db: AsyncSession, token: Optional[str]) -> Invitation:
    if not token:
        raise HTTPException(status_code=400, detail="Missing token parameter.")
    invitation = (await db.execute(select(Invitation).where(Invitation.token == token))).scalars().first()
    if not invitation:
        raise HTTPException(status_code=404, detail="Invitation not found.")
    if invitation.status != InvitationStatus.PENDING:
        raise HTTPException(status_code=410, detail=f"This invitation has already been {invitation.status}.")
    if invitation.expires_at < datetime.utcnow():
        invitation.status = InvitationStatus.EXPIRED
        await db.commit()
        raise HTTPException(status_code=410, detail="This invitation has expired.")
    return invitation


@router.get("/accept-invite")
async def describe_invitation(
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
) -> Any:
    """注册页读取邀请信息（公开）"""
    invitation = await _load_pending_invitation(db, token)
    merchant_name = None
    if invitation.scope == "merchant" and invitation.merchant_id:
        merchant = await db.get(Merchant, invitation.merchant_id)
        merchant_name = merchant.company_name if merchant else None
    return {
        "email": invitation.email,
        "role": invitation.role,
        "scope": invitation.scope,
        "merchant_name": merchant_name,
    }


@router.post("/accept-invite")
async def accept_invitation(
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    user: Optional[AuthUser] = Depends(get_current_user),
) -> Any:
    """接受邀请：商户邀请加入 merchant_users，管理员邀请写入 admin_users"""
    invitation = await _load_pending_invitation(db, token)

    if not user:
        return {
            "redirect": f"/register?invite={token}",
            "message": "Please create an account or log in to accept this invitation.",
        }

    if (user.email or "").lower().strip() != invitation.email.lower().strip():
        raise HTTPException(
            status_code=403,
            detail=f"This invitation was sent to {invitation.email}. Please log in with that email address.",
        )

    now = datetime.utcnow()
    if invitation.scope == "merchant":
        existing = (await db.execute(
            select(MerchantUser).where(
                MerchantUser.merchant_id == invitation.merchant_id,
                MerchantUser.user_id == user.id,
            )
        )).scalars().first()
        if not existing:
            db.add(MerchantUser(
                merchant_id=invitation.merchant_id,
                user_id=user.id,
                email=invitation.email,
                role=invitation.role,
                invited_by=invitation.invited_by,
                invited_at=now,
            ))
    else:
        admin = (await db.execute(select(AdminUser).where(AdminUser.email == invitation.email))).scalars().first()
        if admin:
            admin.user_id = user.id
        else:
            db.add(AdminUser(
                email=invitation.email,
                name=user.user_metadata.get("name") or user.email,
                role=invitation.role,
                user_id=user.id,
                invited_by=invitation.invited_by,
                is_active=True,
            ))

    invitation.status = InvitationStatus.ACCEPTED
    invitation.accepted_at = now
    await create_audit_event(
        db, "team.invite_accepted", "invitation", invitation.id,
        merchant_id=invitation.merchant_id,
        actor_user_id=user.id,
        actor_email=user.email,
        new_values={"email": invitation.email, "role": invitation.role, "scope": invitation.scope},
    )
    await db.commit()
    logger.info(f"✅ 邀请已接受: {invitation.scope}:{invitation.email}")

    return {
        "success": True,
        "scope": invitation.scope,
        "message": "You have been added to the team!" if invitation.scope == "merchant" else "You have been added as an admin!",
    }
