import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.config import settings
from portal.db.base import Base
from portal.db.session import SessionLocal, engine

# 导入所有模型，确保表能被创建
from portal.models import AdminSetting, AdminUser
from portal.models.admin import AdminRole

logger = logging.getLogger(__name__)


async def ensure_tables_exist() -> None:
    """
    确保数据库表存在（应用启动时调用）
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def seed_bootstrap_data(db: AsyncSession) -> dict:
    """
    基础数据检查：全局设置行、首个超级管理员
    """
    result = {"settings_created": False, "super_admin_created": False}

    setting = await db.get(AdminSetting, "global")
    if not setting:
        db.add(AdminSetting(id="global", settings={}))
        result["settings_created"] = True

    email = (settings.BOOTSTRAP_SUPER_ADMIN_EMAIL or "").strip().lower()
    if email:
        existing = await db.execute(select(AdminUser).where(AdminUser.email == email))
        if not existing.scalars().first():
            db.add(AdminUser(email=email, name=email, role=AdminRole.SUPER_ADMIN, is_active=True))
            result["super_admin_created"] = True

    await db.commit()
    return result


async def init_db() -> None:
    """
    初始化数据库 - 创建所有表并写入基础数据
    """
    await ensure_tables_exist()
    async with SessionLocal() as db:
        result = await seed_bootstrap_data(db)
    logger.info(f"数据库初始化完成: {result}")


if __name__ == "__main__":
    asyncio.run(init_db())
