"""系统管理：定时任务状态与手动触发"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from portal.core.deps import AdminContext, require_admin, require_super_admin
from portal.services.scheduler import get_scheduler_status, run_job_now

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/scheduler")
async def scheduler_status(context: AdminContext = Depends(require_admin)) -> Any:
    """获取定时任务状态"""
    return get_scheduler_status()


@router.post("/jobs/{job_id}/run")
async def run_job(job_id: str, context: AdminContext = Depends(require_super_admin)) -> Any:
    """手动执行一次定时任务"""
    result = await run_job_now(job_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")
    logger.info(f"▶️ {context.email} 手动执行任务 {job_id}")
    return {"success": True, "job_id": job_id, "result": result}
