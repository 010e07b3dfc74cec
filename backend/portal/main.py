from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from portal.api.api_v1.api import api_router
from portal.api.api_v1.endpoints.auth import redirect_router
from portal.core.config import settings
from portal.core.errors import register_exception_handlers
from portal.core.logging_config import setup_logging, get_logger
from portal.services.scheduler import init_scheduler, shutdown_scheduler
from portal.db.session import SessionLocal
from portal.db.init_db import ensure_tables_exist, seed_bootstrap_data

# 初始化日志系统
setup_logging(settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时
    logger.info("🚀 应用启动中...")

    # 确保数据库表存在
    await ensure_tables_exist()
    logger.info("📊 数据库表已就绪")

    # 基础数据：全局设置、首个超级管理员
    async with SessionLocal() as db:
        result = await seed_bootstrap_data(db)
    if result.get("super_admin_created"):
        logger.info(f"👤 已创建超级管理员: {settings.BOOTSTRAP_SUPER_ADMIN_EMAIL}")

    init_scheduler()
    yield
    # 关闭时
    logger.info("🛑 应用关闭中...")
    shutdown_scheduler()

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    description="多商户多肽履约门户",
    lifespan=lifespan
)

register_exception_handlers(app)

# CORS配置
if settings.BACKEND_CORS_ORIGINS:
    logger.info(f"配置CORS，允许的源: {settings.BACKEND_CORS_ORIGINS}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

logger.info(f"注册API v1路由，前缀: {settings.API_V1_STR}")
app.include_router(api_router, prefix=settings.API_V1_STR)
# 邮件链接落地页与登录回调（不带 API 前缀）
app.include_router(redirect_router, prefix="/auth", tags=["认证跳转"])


@app.get("/")
async def root():
    return {"message": settings.PROJECT_NAME}


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000, log_level="info")
