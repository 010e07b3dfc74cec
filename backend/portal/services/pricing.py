"""商户定价：专属价优先，否则按商户调价百分比计算"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.models.catalog import MerchantProduct, Product
from portal.models.merchant import Merchant


def adjusted_price_cents(cost_cents: int, adjustment_percent: Optional[float]) -> int:
    """成本按百分比上浮，四舍五入（0.5 进位）到分"""
    factor = 1 + Decimal(str(adjustment_percent or 0)) / 100
    return int((Decimal(cost_cents or 0) * factor).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def effective_price_cents(product: Product, override_cents: Optional[int], adjustment_percent: Optional[float]) -> int:
    if override_cents is not None:
        return override_cents
    return adjusted_price_cents(product.cost_cents, adjustment_percent)


async def merchant_product_map(db: AsyncSession, merchant_id: str) -> Dict[str, MerchantProduct]:
    result = await db.execute(select(MerchantProduct).where(MerchantProduct.merchant_id == merchant_id))
    return {mp.product_id: mp for mp in result.scalars().all()}


async def pricing_table(db: AsyncSession, merchant: Merchant) -> List[Dict[str, Any]]:
    """全部上架商品的商户价格表"""
    products = (await db.execute(
        select(Product).where(Product.active.is_(True)).order_by(Product.sku)
    )).scalars().all()
    overrides = await merchant_product_map(db, merchant.id)
    pct = merchant.price_adjustment_percent or 0

    rows = []
    for product in products:
        mp = overrides.get(product.id)
        override = mp.wholesale_price_cents if mp else None
        adjusted = adjusted_price_cents(product.cost_cents, pct)
        rows.append({
            "product_id": product.id,
            "sku": product.sku,
            "name": product.name,
            "base_cost_cents": product.cost_cents,
            "adjusted_price_cents": adjusted,
            "override_price_cents": override,
            "effective_price_cents": override if override is not None else adjusted,
            "has_override": override is not None,
            "allowed": bool(mp and mp.allowed),
        })
    return rows


async def apply_overrides(db: AsyncSession, merchant_id: str, overrides: List[Dict[str, Any]]) -> Dict[str, int]:
    """
    写入/清除专属价

    清除只把价格置空，白名单（allowed）保持不变。
    """
    existing = await merchant_product_map(db, merchant_id)
    upserted = cleared = 0
    for entry in overrides:
        product_id = entry["product_id"]
        price = entry.get("wholesale_price_cents")
        mp = existing.get(product_id)
        if price is None:
            if mp:
                mp.wholesale_price_cents = None
                cleared += 1
            continue
        if mp:
            mp.wholesale_price_cents = price
        else:
            mp = MerchantProduct(merchant_id=merchant_id, product_id=product_id, wholesale_price_cents=price, allowed=True)
            db.add(mp)
            existing[product_id] = mp
        upserted += 1
    return {"upserted": upserted, "cleared": cleared}


async def apply_bulk_adjustment(db: AsyncSession, merchant: Merchant, adjustment_percent: float) -> int:
    """按百分比给所有上架商品写入专属价，并记录商户调价百分比"""
    products = (await db.execute(select(Product).where(Product.active.is_(True)))).scalars().all()
    existing = await merchant_product_map(db, merchant.id)
    for product in products:
        price = adjusted_price_cents(product.cost_cents, adjustment_percent)
        mp = existing.get(product.id)
        if mp:
            mp.wholesale_price_cents = price
            mp.allowed = True
        else:
            db.add(MerchantProduct(merchant_id=merchant.id, product_id=product.id, wholesale_price_cents=price, allowed=True))
    merchant.price_adjustment_percent = adjustment_percent
    return len(products)

