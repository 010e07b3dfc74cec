"""管理员备用登录码（Supabase 邮件登录不可用时的后备方案）"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.deps import (
    BACKUP_SESSION_COOKIE,
    BACKUP_SESSION_PREFIX,
    AdminContext,
    find_active_admin,
    find_backup_session,
    get_db,
    require_admin,
)
from portal.core.rate_limit import check_rate_limit
from portal.core.security import generate_backup_code, generate_session_token
from portal.models.admin import AdminLoginCode
from portal.schemas.admin import BackupCodeRequest, BackupCodeVerify
from portal.services.audit import client_ip
from portal.services.email import ADMIN_FROM_ADDRESS, EmailClient, backup_code_email, get_email_client

logger = logging.getLogger(__name__)

router = APIRouter()

BACKUP_CODE_TTL = timedelta(minutes=10)
BACKUP_SESSION_TTL = timedelta(hours=24)


@router.post("/send-backup-code")
async def send_backup_code(
    *,
    request: Request,
    payload: BackupCodeRequest,
    db: AsyncSession = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
) -> Any:
    """生成 8 位登录码并发送到管理员邮箱（10 分钟有效）"""
    check_rate_limit(f"backup-code:{client_ip(request)}", "strict")

    admin = await find_active_admin(db, payload.email)
    if not admin:
        raise HTTPException(status_code=403, detail="Invalid admin email")

    await db.execute(
        delete(AdminLoginCode).where(AdminLoginCode.email == payload.email, AdminLoginCode.used.is_(False))
    )
    code = generate_backup_code()
    db.add(AdminLoginCode(email=payload.email, code=code, expires_at=datetime.utcnow() + BACKUP_CODE_TTL))
    await db.commit()

    subject, body = backup_code_email(code)
    sent = await email_client.send_safely(payload.email, subject, body, from_address=ADMIN_FROM_ADDRESS)
    if not sent:
        logger.warning(f"登录码邮件未送达: {payload.email}")

    return {"success": True, "message": "Backup code sent to email"}


@router.post("/verify-backup-code")
async def verify_backup_code(
    *,
    request: Request,
    payload: BackupCodeVerify,
    db: AsyncSession = Depends(get_db),
) -> Any:
    """校验登录码，签发 24 小时备用会话"""
    check_rate_limit(f"backup-verify:{client_ip(request)}", "strict")

    admin = await find_active_admin(db, payload.email)
    if not admin:
        raise HTTPException(status_code=403, detail="Invalid admin email")

    now = datetime.utcnow()
    result = await db.execute(
        select(AdminLoginCode).where(
            AdminLoginCode.email == payload.email,
            AdminLoginCode.code == payload.code,
            AdminLoginCode.used.is_(False),
            AdminLoginCode.expires_at > now,
        )
    )
    login_code = result.scalars().first()
    if not login_code:
        raise HTTPException(status_code=401, detail="Invalid or expired code")

    login_code.used = True
    login_code.used_at = now

    token = generate_session_token()
    expires_at = now + BACKUP_SESSION_TTL
    db.add(AdminLoginCode(email=payload.email, code=f"{BACKUP_SESSION_PREFIX}{token}", expires_at=expires_at))
    admin.last_login_at = now
    await db.commit()
    logger.info(f"🔑 管理员备用登录: {payload.email}")

    response = JSONResponse({"success": True, "message": "Code verified successfully", "sessionToken": token})
    response.set_cookie(
        BACKUP_SESSION_COOKIE,
        token,
        max_age=int(BACKUP_SESSION_TTL.total_seconds()),
        httponly=True,
        samesite="lax",
        secure=request.url.scheme == "https",
        path="/",
    )
    return response


@router.get("/validate-backup-session")
async def validate_backup_session(
    *,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Any:
    token = request.cookies.get(BACKUP_SESSION_COOKIE)
    session_row: Optional[AdminLoginCode] = await find_backup_session(db, token) if token else None
    if not session_row:
        return JSONResponse({"valid": False}, status_code=401)
    return {
        "valid": True,
        "email": session_row.email,
        "expiresAt": session_row.expires_at.isoformat(),
    }


@router.post("/logout-backup-session")
async def logout_backup_session(
    *,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Any:
    token = request.cookies.get(BACKUP_SESSION_COOKIE)
    if token:
        await db.execute(delete(AdminLoginCode).where(AdminLoginCode.code == f"{BACKUP_SESSION_PREFIX}{token}"))
        await db.commit()

    response = JSONResponse({"success": True})
    response.delete_cookie(BACKUP_SESSION_COOKIE, path="/")
    return response


@router.get("/me")
async def get_me(context: AdminContext = Depends(require_admin)) -> Any:
    """当前管理员信息"""
    admin = context.admin
    return {
        "id": admin.id,
        "user_id": admin.user_id,
        "email": admin.email,
        "name": admin.name,
        "role": admin.role,
        "is_active": admin.is_active,
        "is_super_admin": context.is_super_admin,
        "via": context.via,
    }
