from typing import List, Optional, Union
import logging

from pydantic import AnyHttpUrl, Field, validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    PROJECT_NAME: str = "LabSupply 履约门户"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # CORS配置
    BACKEND_CORS_ORIGINS: List[Union[str, AnyHttpUrl]] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:3001",
        "http://127.0.0.1:3001"
    ]

    @validator("BACKEND_CORS_ORIGINS", pre=True)
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # 数据库配置（本地 SQLite，生产环境指向 Supabase Postgres）
    DATABASE_URL: str = "sqlite:///./portal.db"

    # 门户对外地址（邀请链接、回调等）
    APP_URL: str = "http://localhost:3000"
    API_BASE_URL: str = "http://localhost:8000"

    # Supabase（认证 + 存储）
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""

    # Resend 邮件
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "LabSupply <noreply@peptidetech.co>"
    WITHDRAWAL_NOTIFY_EMAIL: str = "whitelabel@peptidetech.co"

    # Mercury 发票/银行
    MERCURY_API_TOKEN: str = ""
    MERCURY_ACCOUNT_ID: str = ""
    MERCURY_WEBHOOK_SECRET: str = ""

    # ShipStation 面单
    SHIPSTATION_API_KEY: str = ""
    SHIPSTATION_API_SECRET: str = ""

    # 发货仓地址
    ORIGIN_NAME: str = "LabSupply Fulfillment"
    ORIGIN_STREET1: str = ""
    ORIGIN_CITY: str = ""
    ORIGIN_STATE: str = ""
    ORIGIN_ZIP: str = ""
    ORIGIN_COUNTRY: str = "US"
    ORIGIN_PHONE: Optional[str] = None

    # 启动时自动创建的超级管理员（为空则跳过）
    BOOTSTRAP_SUPER_ADMIN_EMAIL: str = Field(
        default="",
        description="首个超级管理员邮箱，生产环境通过 .env 设置"
    )

    # 定时任务
    SCHEDULER_ENABLED: bool = True
    MERCURY_SYNC_MINUTES: str = "*/5"  # 发票同步（cron 分钟表达式）
    MERCURY_BALANCE_CHECK_MINUTES: str = "*/15"  # 余额检查

    # 手动触发定时任务的共享密钥
    CRON_SECRET: str = ""

    class Config:
        case_sensitive = True
        env_file = ".env"

    @property
    def async_database_url(self) -> str:
        """转换为异步驱动的连接串"""
        url = self.DATABASE_URL
        if url.startswith("sqlite:///"):
            return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+asyncpg://", 1)
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    @property
    def mercury_configured(self) -> bool:
        return bool(self.MERCURY_API_TOKEN)

    @property
    def shipstation_configured(self) -> bool:
        return bool(self.SHIPSTATION_API_KEY and self.SHIPSTATION_API_SECRET)


settings = Settings()
logger.info(f"加载配置: API_V1_STR={settings.API_V1_STR}, CORS={settings.BACKEND_CORS_ORIGINS}")
