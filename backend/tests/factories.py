"""测试数据构造（全部直接提交）"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.security import hash_secret
from portal.models.admin import AdminRole, AdminUser
from portal.models.catalog import Inventory, MerchantProduct, Product
from portal.models.merchant import KybStatus, Merchant, MerchantStatus
from portal.models.store import Store, StoreSecret, StoreStatus
from portal.models.wallet import WalletAccount

OWNER_USER_ID = "user-owner-1"
OWNER_EMAIL = "owner@acme.com"
ADMIN_EMAIL = "ops@labsupply.com"
STORE_SECRET = "store-secret-for-tests"


async def create_admin(db: AsyncSession, email: str = ADMIN_EMAIL, role: str = AdminRole.SUPER_ADMIN) -> AdminUser:
    admin = AdminUser(email=email, name="Ops", role=role, is_active=True)
    db.add(admin)
    await db.commit()
    return admin


async def create_merchant(
    db: AsyncSession,
    *,
    user_id: str = OWNER_USER_ID,
    email: str = OWNER_EMAIL,
    company_name: str = "Acme Research",
    status: str = MerchantStatus.ACTIVE,
    kyb_status: str = KybStatus.APPROVED,
    balance_cents: Optional[int] = None,
    reserved_cents: int = 0,
    **kwargs,
) -> Merchant:
    merchant = Merchant(
        user_id=user_id,
        email=email,
        company_name=company_name,
        status=status,
        kyb_status=kyb_status,
        can_ship=status == MerchantStatus.ACTIVE,
        **kwargs,
    )
    db.add(merchant)
    await db.flush()
    if balance_cents is not None:
        db.add(WalletAccount(merchant_id=merchant.id, currency="USD", balance_cents=balance_cents, reserved_cents=reserved_cents))
    await db.commit()
    return merchant


async def create_product(
    db: AsyncSession,
    sku: str = "BPC157-5MG",
    *,
    name: str = "BPC-157 5mg",
    cost_cents: int = 2500,
    on_hand: int = 100,
    reserved: int = 0,
) -> Product:
    product = Product(sku=sku, name=name, category="Peptides", cost_cents=cost_cents, active=True)
    product.inventory = Inventory(on_hand=on_hand, reserved=reserved, incoming=0, reorder_point=10)
    db.add(product)
    await db.commit()
    return product


async def allow_product(
    db: AsyncSession,
    merchant: Merchant,
    product: Product,
    wholesale_price_cents: Optional[int] = None,
) -> MerchantProduct:
    mp = MerchantProduct(
        merchant_id=merchant.id,
        product_id=product.id,
        allowed=True,
        wholesale_price_cents=wholesale_price_cents,
    )
    db.add(mp)
    await db.commit()
    return mp


async def create_store(db: AsyncSession, merchant: Merchant, secret: str = STORE_SECRET) -> Store:
    store = Store(
        merchant_id=merchant.id,
        name="Acme Shop",
        url="https://shop.acme.test",
        status=StoreStatus.CONNECTED,
        currency="USD",
    )
    db.add(store)
    await db.flush()
    db.add(StoreSecret(store_id=store.id, secret_hash=hash_secret(secret), secret_plaintext=secret, is_active=True))
    await db.commit()
    return store
