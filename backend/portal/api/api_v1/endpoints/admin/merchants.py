"""商户管理 + 商户定价"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.deps import AdminContext, get_db, require_admin
from portal.models.merchant import Merchant
from portal.models.wallet import WalletAccount
from portal.schemas.catalog import PricingAdjustment, PricingOverridesUpdate
from portal.schemas.common import build_pagination
from portal.schemas.merchant import MerchantAdminUpdate, MerchantResponse
from portal.services.audit import client_ip, create_audit_event
from portal.services.pricing import apply_bulk_adjustment, apply_overrides, pricing_table

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def list_merchants(
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    status: Optional[str] = Query(None),
    kyb_status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> Any:
    conditions = []
    if status:
        conditions.append(Merchant.status == status)
    if kyb_status:
        conditions.append(Merchant.kyb_status == kyb_status)
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(Merchant.company_name.ilike(pattern), Merchant.email.ilike(pattern)))

    query = select(Merchant)
    count_query = select(func.count(Merchant.id))
    if conditions:
        query = query.where(and_(*conditions))
        count_query = count_query.where(and_(*conditions))

    total = (await db.execute(count_query)).scalar() or 0
    query = query.order_by(Merchant.created_at.desc()).offset((page - 1) * limit).limit(limit)
    merchants = (await db.execute(query)).scalars().all()

    # 附带钱包余额
    wallets = {}
    if merchants:
        wallet_rows = await db.execute(
            select(WalletAccount).where(WalletAccount.merchant_id.in_([m.id for m in merchants]))
        )
        wallets = {w.merchant_id: w for w in wallet_rows.scalars().all()}

    data = []
    for merchant in merchants:
        item = MerchantResponse.model_validate(merchant).model_dump()
        wallet = wallets.get(merchant.id)
        item["wallet_balance_cents"] = wallet.balance_cents if wallet else 0
        data.append(item)

    return {"data": data, "pagination": build_pagination(page, limit, total)}


@router.patch("")
async def update_merchant(
    *,
    request: Request,
    payload: MerchantAdminUpdate,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    updates = payload.model_dump(exclude_unset=True, exclude={"id"})
    if not updates:
        raise HTTPException(status_code=400, detail="No valid fields to update")

    merchant = await db.get(Merchant, payload.id)
    if not merchant:
        raise HTTPException(status_code=404, detail="Merchant not found")

    old_values = {key: getattr(merchant, key) for key in updates}
    for key, value in updates.items():
        setattr(merchant, key, value)

    await create_audit_event(
        db, "merchant.updated", "merchant", merchant.id,
        merchant_id=merchant.id,
        actor_user_id=context.admin.user_id,
        actor_email=context.email,
        old_values=old_values,
        new_values=updates,
        ip_address=client_ip(request),
    )
    await db.commit()
    await db.refresh(merchant)
    return {"data": MerchantResponse.model_validate(merchant)}


# ==================== 定价 ====================

async def _get_merchant_or_404(db: AsyncSession, merchant_id: str) -> Merchant:
    merchant = await db.get(Merchant, merchant_id)
    if not merchant:
        raise HTTPException(status_code=404, detail="Merchant not found")
    return merchant


@router.get("/{merchant_id}/pricing")
async def get_pricing(
    merchant_id: str,
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    """有效价 = 专属价，否则 基础价 × (1 + 调价%/100)"""
    merchant = await _get_merchant_or_404(db, merchant_id)
    return {
        "merchant": {
            "id": merchant.id,
            "company_name": merchant.company_name,
            "price_adjustment_percent": merchant.price_adjustment_percent or 0,
        },
        "pricing": await pricing_table(db, merchant),
    }


@router.patch("/{merchant_id}/pricing")
async def update_pricing_overrides(
    merchant_id: str,
    *,
    payload: PricingOverridesUpdate,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    if not payload.overrides:
        raise HTTPException(status_code=400, detail="overrides array is required")
    merchant = await _get_merchant_or_404(db, merchant_id)

    entries = [o.model_dump() for o in payload.overrides]
    result = await apply_overrides(db, merchant.id, entries)
    await create_audit_event(
        db, "merchant.pricing_updated", "merchant", merchant.id,
        merchant_id=merchant.id,
        actor_email=context.email,
        new_values={"overrides": entries},
    )
    await db.commit()
    return {"success": True, **result}


@router.post("/{merchant_id}/pricing")
async def bulk_adjust_pricing(
    merchant_id: str,
    *,
    payload: PricingAdjustment,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    merchant = await _get_merchant_or_404(db, merchant_id)
    previous = merchant.price_adjustment_percent
    count = await apply_bulk_adjustment(db, merchant, payload.adjustment_percent)
    await create_audit_event(
        db, "merchant.pricing_adjusted", "merchant", merchant.id,
        merchant_id=merchant.id,
        actor_email=context.email,
        old_values={"price_adjustment_percent": previous},
        new_values={"price_adjustment_percent": payload.adjustment_percent},
    )
    await db.commit()
    logger.info(f"💲 批量调价: merchant={merchant.id} pct={payload.adjustment_percent} products={count}")
    return {"success": True, "products_updated": count}
