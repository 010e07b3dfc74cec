"""商品与库存管理"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from portal.core.deps import AdminContext, get_db, require_admin
from portal.models.catalog import DEFAULT_REORDER_POINT, Inventory, Product
from portal.schemas.catalog import InventoryItemResponse, InventoryUpdate, ProductCreate
from portal.schemas.common import build_pagination
from portal.services.audit import client_ip, create_audit_event

logger = logging.getLogger(__name__)

router = APIRouter()

INVENTORY_FIELDS = ("on_hand", "incoming", "reorder_point")


def build_inventory_response(product: Product) -> InventoryItemResponse:
    inv = product.inventory
    return InventoryItemResponse(
        id=product.id,
        sku=product.sku,
        name=product.name,
        description=product.description,
        category=product.category or "Uncategorized",
        cost_cents=product.cost_cents or 0,
        weight_grams=product.weight_grams,
        image_url=product.image_url,
        active=bool(product.active),
        on_hand=inv.on_hand if inv else 0,
        reserved=inv.reserved if inv else 0,
        incoming=inv.incoming if inv else 0,
        available=inv.available if inv else 0,
        reorder_point=inv.reorder_point if inv and inv.reorder_point is not None else DEFAULT_REORDER_POINT,
        is_low_stock=inv.is_low_stock if inv else True,
        created_at=product.created_at,
    )


@router.get("")
async def list_inventory(
    *,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
    search: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    low_stock: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
) -> Any:
    """商品库存列表（可按低库存筛选）"""
    conditions = []
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(Product.name.ilike(pattern), Product.sku.ilike(pattern)))
    if category:
        conditions.append(Product.category == category)
    if low_stock:
        available = func.coalesce(Inventory.on_hand, 0) - func.coalesce(Inventory.reserved, 0)
        conditions.append(available <= func.coalesce(Inventory.reorder_point, DEFAULT_REORDER_POINT))

    query = select(Product).outerjoin(Inventory, Inventory.product_id == Product.id).options(selectinload(Product.inventory))
    count_query = select(func.count(Product.id)).outerjoin(Inventory, Inventory.product_id == Product.id)
    if conditions:
        query = query.where(and_(*conditions))
        count_query = count_query.where(and_(*conditions))

    total = (await db.execute(count_query)).scalar() or 0
    query = query.order_by(Product.name.asc()).offset((page - 1) * limit).limit(limit)
    products = (await db.execute(query)).scalars().unique().all()

    return {
        "data": [build_inventory_response(p) for p in products],
        "pagination": build_pagination(page, limit, total),
    }


@router.post("", status_code=201)
async def create_product(
    *,
    request: Request,
    payload: ProductCreate,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    """新增商品，SKU 统一大写且唯一"""
    existing = await db.execute(select(Product.id).where(Product.sku == payload.sku))
    if existing.first():
        raise HTTPException(
            status_code=409,
            detail=f'A product with SKU "{payload.sku}" already exists. Use a unique SKU or edit the existing product.',
        )

    product = Product(
        sku=payload.sku,
        name=payload.name,
        description=payload.description,
        category=payload.category,
        cost_cents=payload.cost_cents,
        weight_grams=payload.weight_grams,
        image_url=payload.image_url,
        active=payload.active,
    )
    product.inventory = Inventory(on_hand=payload.on_hand, reserved=0, incoming=0, reorder_point=payload.reorder_point)
    db.add(product)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail=f'A product with SKU "{payload.sku}" already exists.')

    await create_audit_event(
        db, "inventory.product_created", "product", product.id,
        actor_user_id=context.admin.user_id,
        actor_email=context.email,
        metadata={"sku": payload.sku, "name": payload.name, "cost_cents": payload.cost_cents},
        ip_address=client_ip(request),
    )
    await db.commit()
    logger.info(f"🧪 新增商品: {payload.sku}")
    return {"data": {"id": product.id, "sku": product.sku}}


@router.patch("")
async def update_inventory(
    *,
    request: Request,
    payload: InventoryUpdate,
    db: AsyncSession = Depends(get_db),
    context: AdminContext = Depends(require_admin),
) -> Any:
    result = await db.execute(
        select(Product).options(selectinload(Product.inventory)).where(Product.id == payload.product_id)
    )
    product = result.scalars().first()
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    updates = payload.model_dump(exclude_unset=True, exclude={"product_id", "reason"})
    product_updates = {k: v for k, v in updates.items() if k not in INVENTORY_FIELDS}
    inventory_updates = {k: v for k, v in updates.items() if k in INVENTORY_FIELDS}

    old_values = {}
    for key, value in product_updates.items():
        old_values[key] = getattr(product, key)
        setattr(product, key, value)

    if inventory_updates:
        if product.inventory is None:
            product.inventory = Inventory(on_hand=0, reserved=0, incoming=0, reorder_point=DEFAULT_REORDER_POINT)
        for key, value in inventory_updates.items():
            old_values[key] = getattr(product.inventory, key)
            setattr(product.inventory, key, value)

    await create_audit_event(
        db, "inventory.adjusted", "product", product.id,
        actor_user_id=context.admin.user_id,
        actor_email=context.email,
        old_values=old_values,
        new_values=updates,
        metadata={"reason": payload.reason or "Admin adjustment"},
        ip_address=client_ip(request),
    )
    await db.commit()
    return {"success": True, "data": build_inventory_response(product)}
