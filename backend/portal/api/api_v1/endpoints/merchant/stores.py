"""店铺连接：生成一次性连接码、查看已连接店铺"""

import logging
from datetime import datetime, timedelta
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.deps import MerchantContext, get_db, get_merchant_context, require_merchant_role
from portal.core.security import generate_connect_code, normalize_connect_code
from portal.models.merchant import MerchantRole
from portal.models.store import ConnectCode, Store

logger = logging.getLogger(__name__)

router = APIRouter()

CONNECT_CODE_TTL = timedelta(hours=24)


@router.post("/connect-code", status_code=201)
async def create_connect_code(
    *,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(require_merchant_role(MerchantRole.ADMIN)),
) -> Any:
    """生成连接码（XXXX-XXXX-XXXX，24 小时有效，存储时去掉连字符）"""
    code = generate_connect_code()
    expires_at = datetime.utcnow() + CONNECT_CODE_TTL
    db.add(ConnectCode(merchant_id=context.merchant_id, code=normalize_connect_code(code), expires_at=expires_at))
    await db.commit()
    logger.info(f"🔗 生成连接码: merchant={context.merchant_id}")
    return {"code": code, "expires_at": expires_at}


@router.get("/stores")
async def list_stores(
    *,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(get_merchant_context),
) -> Any:
    stores = (await db.execute(
        select(Store).where(Store.merchant_id == context.merchant_id).order_by(Store.created_at.desc())
    )).scalars().all()
    return {
        "data": [
            {
                "id": s.id,
                "type": s.type,
                "name": s.name,
                "url": s.url,
                "status": s.status,
                "currency": s.currency,
                "woo_version": s.woo_version,
                "created_at": s.created_at,
            }
            for s in stores
        ]
    }
