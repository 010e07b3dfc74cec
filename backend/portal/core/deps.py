"""
依赖注入 - 数据库会话、当前用户、管理员/商户上下文

认证交给 Supabase：这里只读取访问令牌（Authorization: Bearer 或 sb-access-token Cookie），
向 Supabase 取回用户，再查 admin_users / merchants 判断身份。
"""

from dataclasses import dataclass
from datetime import datetime
from typing import AsyncGenerator, Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.db.session import SessionLocal
from portal.models.admin import AdminLoginCode, AdminRole, AdminUser
from portal.models.merchant import Merchant, MerchantRole, MerchantUser
from portal.services.supabase import AuthUser, SupabaseAuthClient, get_auth_client

ACCESS_TOKEN_COOKIE = "sb-access-token"
REFRESH_TOKEN_COOKIE = "sb-refresh-token"
BACKUP_SESSION_COOKIE = "admin_backup_session"
BACKUP_SESSION_PREFIX = "session:"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    获取数据库会话依赖
    """
    async with SessionLocal() as session:
        yield session


def get_access_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization") or ""
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return request.cookies.get(ACCESS_TOKEN_COOKIE)


async def get_current_user(
    request: Request,
    auth_client: SupabaseAuthClient = Depends(get_auth_client),
) -> Optional[AuthUser]:
    """未登录返回 None"""
    token = get_access_token(request)
    if not token:
        return None
    return await auth_client.get_user(token)


async def require_user(user: Optional[AuthUser] = Depends(get_current_user)) -> AuthUser:
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


# ==================== 管理员 ====================

@dataclass
class AdminContext:
    admin: AdminUser
    via: str  # supabase / backup_session

    @property
    def email(self) -> str:
        return self.admin.email

    @property
    def is_super_admin(self) -> bool:
        return self.admin.role == AdminRole.SUPER_ADMIN


async def find_active_admin(db: AsyncSession, email: str) -> Optional[AdminUser]:
    result = await db.execute(
        select(AdminUser).where(AdminUser.email == email.lower().strip(), AdminUser.is_active.is_(True))
    )
    return result.scalars().first()


async def find_backup_session(db: AsyncSession, token: str) -> Optional[AdminLoginCode]:
    result = await db.execute(
        select(AdminLoginCode).where(
            AdminLoginCode.code == f"{BACKUP_SESSION_PREFIX}{token}",
            AdminLoginCode.expires_at > datetime.utcnow(),
        )
    )
    return result.scalars().first()


async def get_admin_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
    user: Optional[AuthUser] = Depends(get_current_user),
) -> Optional[AdminContext]:
    """Supabase 会话优先，其次备用登录会话 Cookie"""
    if user and user.email:
        admin = await find_active_admin(db, user.email)
        if admin:
            if not admin.user_id:
                admin.user_id = user.id
                await db.commit()
            return AdminContext(admin=admin, via="supabase")

    token = request.cookies.get(BACKUP_SESSION_COOKIE)
    if token:
        session_row = await find_backup_session(db, token)
        if session_row:
            admin = await find_active_admin(db, session_row.email)
            if admin:
                return AdminContext(admin=admin, via="backup_session")
    return None


async def require_admin(context: Optional[AdminContext] = Depends(get_admin_context)) -> AdminContext:
    if not context:
        raise HTTPException(status_code=401, detail="Unauthorized. Admin authentication required.")
    return context


async def require_super_admin(context: AdminContext = Depends(require_admin)) -> AdminContext:
    if not context.is_super_admin:
        raise HTTPException(status_code=403, detail="Super admin access required.")
    return context


# ==================== 商户 ====================

@dataclass
class MerchantContext:
    merchant: Merchant
    user: AuthUser
    role: str

    @property
    def merchant_id(self) -> str:
        return self.merchant.id

    def has_role(self, minimum: str) -> bool:
        return MerchantRole.level(self.role) >= MerchantRole.level(minimum)


async def get_merchant_context(
    db: AsyncSession = Depends(get_db),
    user: AuthUser = Depends(require_user),
) -> MerchantContext:
    """所有者直接匹配 merchants.user_id，团队成员通过 merchant_users"""
    result = await db.execute(select(Merchant).where(Merchant.user_id == user.id))
    merchant = result.scalars().first()
    if merchant:
        return MerchantContext(merchant=merchant, user=user, role=MerchantRole.OWNER)

    result = await db.execute(
        select(MerchantUser).where(MerchantUser.user_id == user.id, MerchantUser.is_active.is_(True))
    )
    membership = result.scalars().first()
    if membership:
        merchant = await db.get(Merchant, membership.merchant_id)
        if merchant:
            return MerchantContext(merchant=merchant, user=user, role=membership.role)

    raise HTTPException(status_code=404, detail="Merchant not found")


def require_merchant_role(minimum: str):
    """按最低角色限制商户接口"""

    async def dependency(context: MerchantContext = Depends(get_merchant_context)) -> MerchantContext:
        if not context.has_role(minimum):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return context

    return dependency
