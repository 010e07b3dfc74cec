import pytest
from sqlalchemy import select

from portal.core.errors import ApiError
from portal.models.order import OrderStatus, OrderStatusHistory
from portal.models.wallet import WalletTransactionType
from portal.schemas.store_api import StoreOrderCreate
from portal.services.errors import OrderTransitionError
from portal.services.order_flow import (
    cancel_order,
    create_shipment,
    ingest_store_order,
    mark_shipped,
    retry_awaiting_funds,
    transition_order,
)
from portal.services.wallet import adjust_balance, get_wallet
from tests.factories import allow_product, create_merchant, create_product, create_store

ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address_1": "1 Lab Way",
    "city": "Austin",
    "state": "TX",
    "postcode": "78701",
    "country": "us",
}


def order_payload(woo_order_id: str = "1001", sku: str = "BPC157-5MG", qty: int = 2) -> StoreOrderCreate:
    return StoreOrderCreate(
        woo_order_id=woo_order_id,
        woo_order_number=f"#{woo_order_id}",
        shipping_address=ADDRESS,
        customer_email="buyer@example.com",
        items=[{"supplier_sku": sku.lower(), "qty": qty}],
    )


@pytest.fixture
def seed(db):
    async def _seed(balance_cents: int = 100_000, on_hand: int = 100, override_cents=None):
        merchant = await create_merchant(db, balance_cents=balance_cents)
        product = await create_product(db, on_hand=on_hand)
        await allow_product(db, merchant, product, override_cents)
        store = await create_store(db, merchant)
        return merchant, product, store

    return _seed


async def test_funded_order_reserves_wallet_and_inventory(db, seed):
    merchant, product, store = await seed()

    result = await ingest_store_order(db, store, order_payload())
    await db.commit()

    wallet = await get_wallet(db, merchant.id)
    await db.refresh(product.inventory)
    order = result["order"]
    # 2 × $25.00 + $8.95 预估运费
    assert order.total_estimate_cents == 5_895
    assert result["status"] == OrderStatus.FUNDED
    assert result["is_funded"] is True
    assert result["compliance_message"] is None
    assert wallet.reserved_cents == 5_895
    assert wallet.balance_cents == 100_000
    assert product.inventory.reserved == 2
    assert order.wallet_reservation_id is not None
    assert order.items[0].sku == "BPC157-5MG"


async def test_order_below_compliance_reserve_awaits_funds(db, seed):
    merchant, _product, store = await seed(balance_cents=50_000)

    result = await ingest_store_order(db, store, order_payload())
    await db.commit()

    order = result["order"]
    assert result["status"] == OrderStatus.AWAITING_FUNDS
    assert result["is_funded"] is False
    assert "compliance reserve" in result["compliance_message"]
    assert order.extra_data["compliance_blocked"] is True
    assert order.extra_data["required_balance"] == 5_895 + 50_000
    wallet = await get_wallet(db, merchant.id)
    assert wallet.reserved_cents == 0


async def test_topup_retries_awaiting_orders(db, seed):
    merchant, _product, store = await seed(balance_cents=50_000)
    result = await ingest_store_order(db, store, order_payload())
    await db.commit()

    await adjust_balance(db, merchant.id, 10_000, WalletTransactionType.TOPUP, idempotency_key="topup-retry")
    funded = await retry_awaiting_funds(db, merchant.id)
    await db.commit()

    wallet = await get_wallet(db, merchant.id)
    assert funded == [result["supplier_order_id"]]
    assert result["order"].status == OrderStatus.FUNDED
    assert wallet.reserved_cents == 5_895


async def test_duplicate_push_returns_existing_order(db, seed):
    _merchant, _product, store = await seed()
    first = await ingest_store_order(db, store, order_payload())
    await db.commit()

    second = await ingest_store_order(db, store, order_payload())

    assert second["is_duplicate"] is True
    assert second["supplier_order_id"] == first["supplier_order_id"]
    assert second["is_funded"] is True


async def test_inventory_shortage_holds_order(db, seed):
    merchant, _product, store = await seed(on_hand=1)

    result = await ingest_store_order(db, store, order_payload(qty=2))
    await db.commit()

    wallet = await get_wallet(db, merchant.id)
    assert result["status"] == OrderStatus.ON_HOLD_COMPLIANCE
    assert "Insufficient inventory" in result["order"].supplier_notes
    assert wallet.reserved_cents == 0


async def test_merchant_override_price_wins(db, seed):
    _merchant, _product, store = await seed(override_cents=2_000)

    result = await ingest_store_order(db, store, order_payload())

    assert result["order"].subtotal_cents == 4_000
    assert result["order"].items[0].unit_price_cents == 2_000


async def test_product_must_be_whitelisted(db):
    merchant = await create_merchant(db, balance_cents=100_000)
    await create_product(db)
    store = await create_store(db, merchant)

    with pytest.raises(ApiError) as exc_info:
        await ingest_store_order(db, store, order_payload())

    assert exc_info.value.code == "PRODUCT_NOT_WHITELISTED"


async def test_unknown_sku_is_rejected(db, seed):
    _merchant, _product, store = await seed()

    with pytest.raises(ApiError) as exc_info:
        await ingest_store_order(db, store, order_payload(sku="NOPE-1"))

    assert exc_info.value.code == "PRODUCTS_NOT_FOUND"


async def test_cancel_releases_reservation(db, seed):
    merchant, product, store = await seed()
    result = await ingest_store_order(db, store, order_payload())
    await db.commit()
    order = result["order"]

    await cancel_order(db, order, "Customer changed mind", actor_email="owner@acme.com")
    await db.commit()

    wallet = await get_wallet(db, merchant.id)
    await db.refresh(product.inventory)
    history = (await db.execute(
        select(OrderStatusHistory.to_status).where(OrderStatusHistory.order_id == order.id)
    )).scalars().all()
    assert order.status == OrderStatus.CANCELLED
    assert order.supplier_notes == "Cancelled: Customer changed mind"
    assert wallet.reserved_cents == 0
    assert product.inventory.reserved == 0
    assert OrderStatus.CANCELLED in history


async def test_invalid_transition_is_rejected(db, seed):
    _merchant, _product, store = await seed()
    result = await ingest_store_order(db, store, order_payload())
    await db.commit()

    with pytest.raises(OrderTransitionError):
        await transition_order(db, result["order"], OrderStatus.SHIPPED)


async def test_shipping_settles_actual_total(db, seed):
    merchant, product, store = await seed()
    result = await ingest_store_order(db, store, order_payload())
    await db.commit()
    order = result["order"]

    await transition_order(db, order, OrderStatus.RELEASED_TO_FULFILLMENT, changed_by="ops")
    shipment = await create_shipment(db, order, "usps", "usps_priority_mail")
    assert order.status == OrderStatus.PACKED

    settled = await mark_shipped(db, shipment, order, tracking_number="9400TEST", actual_cost_cents=700)
    await db.commit()

    wallet = await get_wallet(db, merchant.id)
    await db.refresh(product.inventory)
    assert settled["actual_total_cents"] == 5_700
    assert order.status == OrderStatus.SHIPPED
    assert order.tracking_number == "9400TEST"
    assert wallet.balance_cents == 100_000 - 5_700
    assert wallet.reserved_cents == 0
    assert product.inventory.reserved == 0


async def test_funded_order_ships_through_fulfillment(db, seed):
    merchant, _product, store = await seed()
    result = await ingest_store_order(db, store, order_payload())
    await db.commit()
    order = result["order"]
    assert order.status == OrderStatus.FUNDED

    shipment = await create_shipment(db, order, "usps", "usps_priority_mail", actor_email="ops@labsupply.com")
    assert order.status == OrderStatus.PACKED

    await mark_shipped(db, shipment, order, actual_cost_cents=895)
    await db.commit()

    history = (await db.execute(
        select(OrderStatusHistory.to_status)
        .where(OrderStatusHistory.order_id == order.id)
        .order_by(OrderStatusHistory.created_at, OrderStatusHistory.id)
    )).scalars().all()
    wallet = await get_wallet(db, merchant.id)
    assert order.status == OrderStatus.SHIPPED
    assert OrderStatus.RELEASED_TO_FULFILLMENT in history
    assert OrderStatus.PACKED in history
    assert wallet.balance_cents == 100_000 - 5_895
    assert wallet.reserved_cents == 0
