"""平台设置（默认值 + admin_settings 中 id=global 的 JSON 合并）"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.deps import AdminContext, get_db, require_admin
from portal.models.system import AdminSetting
from portal.services.audit import client_ip, create_audit_event

logger = logging.getLogger(__name__)

router = APIRouter()

SETTINGS_ROW_ID = "global"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "shipstation_auto_push": True,
    "standard_shipping_delivery": "5-7 business days",
    "standard_shipping_cost": "8.95",
    "standard_shipping_service": "usps_priority_mail",
    "expedited_shipping_delivery": "1-3 business days",
    "expedited_shipping_cost": "24.95",
    "expedited_shipping_service": "ups_2nd_day_air",
    "processing_time_days": "1",
    "free_shipping_threshold": "150",
    "default_markup_percent": "30",
    "minimum_wallet_topup": "50",
    "notify_new_orders": True,
    "notify_low_stock": True,
    "notify_kyb_submissions": True,
    "notify_low_balance": True,
    "low_stock_alert_threshold": "10",
    "mercury_ach_enabled": True,
    "mercury_cc_enabled": False,
}


@router.get("")
async def get_settings(
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    row = await db.get(AdminSetting, SETTINGS_ROW_ID)
    if not row:
        return {"data": dict(DEFAULT_SETTINGS), "source": "defaults"}
    return {"data": {**DEFAULT_SETTINGS, **(row.settings or {})}, "source": "database"}


@router.patch("")
async def update_settings(
    *,
    request: Request,
    payload: Dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    """合并写入，不覆盖未提交的键"""
    if not payload:
        raise HTTPException(status_code=400, detail="No settings provided")

    row = await db.get(AdminSetting, SETTINGS_ROW_ID)
    if not row:
        row = AdminSetting(id=SETTINGS_ROW_ID, settings={})
        db.add(row)
    old = dict(row.settings or {})
    # JSON 列需整体赋值才会被识别为已修改
    row.settings = {**old, **payload}

    await create_audit_event(
        db, "admin.settings_updated", "admin_settings", SETTINGS_ROW_ID,
        actor_email=context.email,
        old_values={key: old.get(key) for key in payload},
        new_values=payload,
        ip_address=client_ip(request),
    )
    await db.commit()
    logger.info(f"⚙️ 平台设置已更新: {list(payload)}")
    return {"success": True, "data": {**DEFAULT_SETTINGS, **row.settings}}
