"""
定时任务调度器服务
使用 APScheduler 定时同步 Mercury 发票、检查商户余额
"""

import logging
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from portal.core.config import settings
from portal.db.session import SessionLocal
from portal.services.email import get_email_client
from portal.services.mercury import get_mercury_client
from portal.services.mercury_billing import check_balances, sync_invoices

logger = logging.getLogger(__name__)

# 全局调度器实例
scheduler: Optional[AsyncIOScheduler] = None


async def mercury_sync_invoices_job(session_factory: Callable = SessionLocal) -> Dict[str, Any]:
    """同步 Mercury 发票状态（已结清则入账）"""
    mercury = get_mercury_client()
    if not mercury.configured:
        logger.info("Mercury 未配置，跳过发票同步")
        return {"skipped": True}
    async with session_factory() as db:
        return await sync_invoices(db, mercury, get_email_client())


async def mercury_check_balances_job(session_factory: Callable = SessionLocal) -> Dict[str, Any]:
    """检查商户可用余额，低于阈值自动开票"""
    mercury = get_mercury_client()
    if not mercury.configured:
        logger.info("Mercury 未配置，跳过余额检查")
        return {"skipped": True}
    async with session_factory() as db:
        return await check_balances(db, mercury, get_email_client())


JOBS = {
    "mercury_sync_invoices": (mercury_sync_invoices_job, "Mercury 发票同步"),
    "mercury_check_balances": (mercury_check_balances_job, "Mercury 余额检查"),
}


def init_scheduler():
    """初始化并启动调度器"""
    global scheduler

    if not settings.SCHEDULER_ENABLED:
        logger.info("⏰ 定时任务已禁用")
        return

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        mercury_sync_invoices_job,
        trigger=CronTrigger(minute=settings.MERCURY_SYNC_MINUTES),
        id="mercury_sync_invoices",
        name=JOBS["mercury_sync_invoices"][1],
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        mercury_check_balances_job,
        trigger=CronTrigger(minute=settings.MERCURY_BALANCE_CHECK_MINUTES),
        id="mercury_check_balances",
        name=JOBS["mercury_check_balances"][1],
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info(
        f"⏰ 定时任务调度器已启动 - 发票同步: {settings.MERCURY_SYNC_MINUTES}，"
        f"余额检查: {settings.MERCURY_BALANCE_CHECK_MINUTES}"
    )


def shutdown_scheduler():
    """关闭调度器"""
    global scheduler
    if scheduler:
        scheduler.shutdown()
        scheduler = None
        logger.info("⏰ 定时任务调度器已关闭")


def get_scheduler_status() -> dict:
    """获取调度器状态"""
    if not scheduler:
        return {
            "enabled": settings.SCHEDULER_ENABLED,
            "running": False,
            "jobs": []
        }

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None
        })

    return {
        "enabled": settings.SCHEDULER_ENABLED,
        "running": scheduler.running,
        "jobs": jobs
    }


async def run_job_now(job_id: str, session_factory: Callable = SessionLocal) -> Optional[Dict[str, Any]]:
    """立即执行一次任务（手动触发），未知任务返回 None"""
    entry = JOBS.get(job_id)
    if not entry:
        return None
    job, name = entry
    logger.info(f"▶️ 手动触发任务: {name}")
    return await job(session_factory)
