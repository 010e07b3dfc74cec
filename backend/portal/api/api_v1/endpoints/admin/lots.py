"""
批次管理 + COA（检测报告）

COA 为 PDF，≤ 10MB，存放在 lot-coas/{product_id}/{lot_code}.pdf。
批次数量入库时累加到 on_hand，删除批次时扣减剩余数量（不低于 0）。
"""

import logging
from datetime import date, datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.deps import AdminContext, get_db, require_admin
from portal.models.catalog import DEFAULT_REORDER_POINT, Inventory, Lot, Product
from portal.schemas.catalog import LotResponse
from portal.services.audit import client_ip, create_audit_event
from portal.services.errors import SupabaseError
from portal.services.supabase import COA_BUCKET, SupabaseStorageClient, get_storage_client

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_COA_SIZE = 10 * 1024 * 1024
COA_URL_TTL_SECONDS = 3600


def _parse_date(value: Optional[str], field: str) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").date()
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be a date (YYYY-MM-DD)")


async def _get_inventory(db: AsyncSession, product_id: str) -> Optional[Inventory]:
    result = await db.execute(select(Inventory).where(Inventory.product_id == product_id))
    return result.scalars().first()


@router.get("")
async def list_lots(
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    product_id: Optional[str] = Query(None),
) -> Any:
    if not product_id:
        raise HTTPException(status_code=400, detail="product_id query parameter is required")
    result = await db.execute(
        select(Lot).where(Lot.product_id == product_id).order_by(Lot.created_at.desc())
    )
    return {"data": [LotResponse.model_validate(lot) for lot in result.scalars().all()]}


@router.post("", status_code=201)
async def create_lot(
    *,
    request: Request,
    product_id: Optional[str] = Form(None),
    lot_code: Optional[str] = Form(None),
    manufactured_at: Optional[str] = Form(None),
    expires_at: Optional[str] = Form(None),
    quantity: Optional[int] = Form(None),
    notes: Optional[str] = Form(None),
    coa: Optional[UploadFile] = File(None),
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    storage: SupabaseStorageClient = Depends(get_storage_client),
) -> Any:
    """新增批次（multipart，可附 COA）"""
    lot_code = (lot_code or "").strip()
    if not product_id or not lot_code:
        raise HTTPException(status_code=400, detail="product_id and lot_code are required")
    if quantity is not None and quantity < 0:
        raise HTTPException(status_code=400, detail="quantity must not be negative")

    product = await db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    duplicate = await db.execute(select(Lot.id).where(Lot.product_id == product_id, Lot.lot_code == lot_code))
    if duplicate.first():
        raise HTTPException(status_code=409, detail=f'Lot "{lot_code}" already exists for this product')

    manufactured = _parse_date(manufactured_at, "manufactured_at")
    expires = _parse_date(expires_at, "expires_at")

    coa_path = None
    if coa is not None and coa.filename:
        content = await coa.read()
        if content:
            if coa.content_type != "application/pdf":
                raise HTTPException(status_code=400, detail="COA must be a PDF file")
            if len(content) > MAX_COA_SIZE:
                raise HTTPException(status_code=400, detail="COA file must be 10MB or smaller")
            path = f"{product_id}/{lot_code}.pdf"
            try:
                await storage.upload(COA_BUCKET, path, content, "application/pdf", upsert=True)
            except SupabaseError as e:
                logger.error(f"❌ COA 上传失败 {path}: {e}")
                raise HTTPException(status_code=500, detail="Failed to upload COA file")
            coa_path = path

    lot_quantity = quantity or 0
    lot = Lot(
        product_id=product_id,
        lot_code=lot_code,
        coa_storage_path=coa_path,
        manufactured_at=manufactured,
        expires_at=expires,
        quantity=lot_quantity or None,
        notes=notes or None,
    )
    db.add(lot)
    await db.flush()

    if lot_quantity > 0:
        inventory = await _get_inventory(db, product_id)
        if inventory:
            inventory.on_hand = (inventory.on_hand or 0) + lot_quantity
        else:
            db.add(Inventory(product_id=product_id, on_hand=lot_quantity, reserved=0, incoming=0, reorder_point=DEFAULT_REORDER_POINT))
        await create_audit_event(
            db, "inventory.lot_added", "lot", lot.id,
            actor_email=context.email,
            metadata={"product_id": product_id, "lot_code": lot_code, "quantity": lot_quantity},
            ip_address=client_ip(request),
        )

    await db.commit()
    logger.info(f"🏷️ 新增批次: {product.sku}/{lot_code} qty={lot_quantity}")
    return {"data": LotResponse.model_validate(lot)}


@router.delete("")
async def delete_lot(
    *,
    request: Request,
    id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    storage: SupabaseStorageClient = Depends(get_storage_client),
) -> Any:
    if not id:
        raise HTTPException(status_code=400, detail="id query parameter is required")
    lot = await db.get(Lot, id)
    if not lot:
        raise HTTPException(status_code=404, detail="Lot not found")

    if lot.coa_storage_path:
        try:
            await storage.remove(COA_BUCKET, [lot.coa_storage_path])
        except SupabaseError as e:
            logger.error(f"COA 删除失败 {lot.coa_storage_path}: {e}")

    if lot.quantity and lot.quantity > 0:
        inventory = await _get_inventory(db, lot.product_id)
        if inventory:
            inventory.on_hand = max(0, (inventory.on_hand or 0) - lot.quantity)

    await create_audit_event(
        db, "inventory.lot_deleted", "lot", lot.id,
        actor_email=context.email,
        old_values={"product_id": lot.product_id, "lot_code": lot.lot_code, "quantity": lot.quantity},
        ip_address=client_ip(request),
    )
    await db.delete(lot)
    await db.commit()
    return {"success": True}


@router.get("/{lot_id}/coa")
async def get_coa_url(
    lot_id: str,
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    storage: SupabaseStorageClient = Depends(get_storage_client),
) -> Any:
    """COA 临时下载链接"""
    lot = await db.get(Lot, lot_id)
    if not lot or not lot.coa_storage_path:
        raise HTTPException(status_code=404, detail="COA not found")
    try:
        url = await storage.create_signed_url(COA_BUCKET, lot.coa_storage_path, COA_URL_TTL_SECONDS)
    except SupabaseError as e:
        logger.error(f"❌ COA 签名链接失败 {lot.coa_storage_path}: {e}")
        raise HTTPException(status_code=502, detail="Failed to generate COA link")
    return {"url": url, "expires_in": COA_URL_TTL_SECONDS}
