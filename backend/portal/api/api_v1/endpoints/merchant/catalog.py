"""商户可售商品目录（白名单 + 有效价 + 可用库存）"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from portal.core.deps import MerchantContext, get_db, get_merchant_context
from portal.models.catalog import MerchantProduct, Product
from portal.services.pricing import effective_price_cents

router = APIRouter()


@router.get("")
async def get_catalog(
    *,
    db: AsyncSession = Depends(get_db),
    context: MerchantContext = Depends(get_merchant_context),
    category: Optional[str] = Query(None),
) -> Any:
    query = (
        select(Product, MerchantProduct)
        .join(MerchantProduct, MerchantProduct.product_id == Product.id)
        .options(selectinload(Product.inventory))
        .where(
            MerchantProduct.merchant_id == context.merchant_id,
            MerchantProduct.allowed.is_(True),
            Product.active.is_(True),
        )
        .order_by(Product.name.asc())
    )
    if category:
        query = query.where(Product.category == category)
    rows = (await db.execute(query)).all()

    pct = context.merchant.price_adjustment_percent or 0
    data = []
    for product, mp in rows:
        available = product.inventory.available if product.inventory else 0
        data.append({
            "product_id": product.id,
            "sku": product.sku,
            "name": product.name,
            "description": product.description,
            "category": product.category,
            "image_url": product.image_url,
            "weight_grams": product.weight_grams,
            "price_cents": effective_price_cents(product, mp.wholesale_price_cents, pct),
            "available": max(0, available),
            "in_stock": available > 0,
        })
    return {"data": data}
