"""
管理员、备用登录码、团队邀请
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String

from portal.db.base import Base, created_at_column, uuid_pk


class AdminRole:
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"

    ALL = (SUPER_ADMIN, ADMIN)


class AdminUser(Base):
    """后台管理员（按邮箱识别，user_id 在接受邀请后回填）"""
    __tablename__ = "admin_users"

    id = uuid_pk()
    user_id = Column(String(36), index=True, comment="Supabase 认证用户ID")
    email = Column(String(255), unique=True, nullable=False, index=True, comment="邮箱（小写）")
    name = Column(String(255), comment="姓名")
    role = Column(String(20), default=AdminRole.ADMIN, comment="角色")
    is_active = Column(Boolean, default=True, comment="是否启用")
    invited_by = Column(String(36), comment="邀请人")
    last_login_at = Column(DateTime, comment="最近登录")
    created_at = created_at_column()

    def __repr__(self):
        return f"<AdminUser {self.email} {self.role}>"


class AdminLoginCode(Base):
    """备用登录码

    同一张表保存两类记录：
    - 8 位数字验证码（10 分钟有效）
    - 备用会话 `session:{token}`（24 小时有效）
    """
    __tablename__ = "admin_login_codes"

    id = uuid_pk()
    email = Column(String(255), nullable=False, index=True)
    code = Column(String(100), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    used = Column(Boolean, default=False)
    used_at = Column(DateTime)
    created_at = created_at_column()

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= datetime.utcnow()


class InvitationStatus:
    PENDING = "pending"
    ACCEPTED = "accepted"
    REVOKED = "revoked"
    EXPIRED = "expired"


class Invitation(Base):
    """团队邀请（scope=admin 或 merchant）"""
    __tablename__ = "invitations"

    id = uuid_pk()
    scope = Column(String(20), nullable=False, index=True, comment="admin / merchant")
    merchant_id = Column(String(36), ForeignKey("merchants.id"), index=True)
    email = Column(String(255), nullable=False, index=True)
    role = Column(String(30), nullable=False)
    token = Column(String(100), unique=True, nullable=False, index=True)
    status = Column(String(20), default=InvitationStatus.PENDING, index=True)
    invited_by = Column(String(36), comment="邀请人用户ID")
    expires_at = Column(DateTime, nullable=False)
    accepted_at = Column(DateTime)
    created_at = created_at_column()

    def __repr__(self):
        return f"<Invitation {self.scope}:{self.email} {self.status}>"
