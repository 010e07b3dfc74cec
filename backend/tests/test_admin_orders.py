import pytest
from sqlalchemy import select

from portal.models.catalog import Inventory, Lot
from portal.models.order import OrderStatus, ShipmentStatus
from portal.models.wallet import WalletTransaction, WalletTransactionType
from portal.schemas.store_api import StoreOrderCreate
from portal.services.order_flow import ingest_store_order
from portal.services.wallet import get_wallet
from tests.factories import ADMIN_EMAIL, allow_product, create_admin, create_merchant, create_product, create_store

ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address_1": "1 Lab Way",
    "city": "Austin",
    "state": "TX",
    "postcode": "78701",
    "country": "us",
}


@pytest.fixture
def funded_order(db, auth):
    """余额 $1000 的商户下 2 件 $25 商品（预估 $58.95），管理员已登录"""

    async def _funded_order():
        merchant = await create_merchant(db, balance_cents=100_000)
        product = await create_product(db, on_hand=100)
        await allow_product(db, merchant, product)
        store = await create_store(db, merchant)
        result = await ingest_store_order(db, store, StoreOrderCreate(
            woo_order_id="2001",
            woo_order_number="#2001",
            shipping_address=ADDRESS,
            items=[{"supplier_sku": "BPC157-5MG", "qty": 2}],
        ))
        await db.commit()
        await create_admin(db)
        auth.login("user-admin-1", ADMIN_EMAIL)
        return merchant, product, result["order"]

    return _funded_order


async def inventory_of(db, product_id: str) -> Inventory:
    inventory = (await db.execute(select(Inventory).where(Inventory.product_id == product_id))).scalars().first()
    await db.refresh(inventory)
    return inventory


async def release(client, order_id: str):
    response = await client.patch("/api/v1/admin/orders", json={"id": order_id, "status": OrderStatus.RELEASED_TO_FULFILLMENT})
    assert response.status_code == 200
    return response


# ==================== 列表 / 详情 ====================

async def test_list_and_detail(client, db, funded_order):
    merchant, _product, order = await funded_order()

    listing = await client.get("/api/v1/admin/orders", params={"status": OrderStatus.FUNDED})
    detail = await client.get(f"/api/v1/admin/orders/{order.id}")
    missing = await client.get("/api/v1/admin/orders/does-not-exist")

    assert listing.status_code == 200
    assert [o["id"] for o in listing.json()["data"]] == [order.id]
    assert detail.json()["data"]["merchant_id"] == merchant.id
    assert missing.status_code == 404


# ==================== 打包 ====================

async def test_pack_assigns_lot_and_decrements_stock(client, db, funded_order):
    _merchant, product, order = await funded_order()
    lot = Lot(product_id=product.id, lot_code="LOT-A", quantity=1)
    db.add(lot)
    await db.commit()
    await release(client, order.id)

    response = await client.post(f"/api/v1/admin/orders/{order.id}/pack", json={
        "items": [{"order_item_id": order.items[0].id, "lot_code": "LOT-A"}],
    })

    assert response.status_code == 200
    assert response.json()["status"] == OrderStatus.PACKED
    await db.refresh(lot)
    await db.refresh(order.items[0])
    inventory = await inventory_of(db, product.id)
    # 批次只剩 1 件，扣减后不低于 0
    assert lot.quantity == 0
    assert inventory.on_hand == 98
    assert order.items[0].lot_code == "LOT-A"


async def test_pack_rejects_unknown_item_and_lot(client, db, funded_order):
    _merchant, product, order = await funded_order()
    other_product = await create_product(db, sku="TB500-10MG", name="TB-500")
    db.add(Lot(product_id=other_product.id, lot_code="LOT-B", quantity=10))
    await db.commit()

    not_packable = await client.post(f"/api/v1/admin/orders/{order.id}/pack", json={
        "items": [{"order_item_id": order.items[0].id, "lot_code": "LOT-B"}],
    })
    assert not_packable.status_code == 400
    assert not_packable.json()["code"] == "ORDER_NOT_PACKABLE"

    await release(client, order.id)
    unknown_item = await client.post(f"/api/v1/admin/orders/{order.id}/pack", json={
        "items": [{"order_item_id": "not-on-this-order", "lot_code": "LOT-B"}],
    })
    wrong_product_lot = await client.post(f"/api/v1/admin/orders/{order.id}/pack", json={
        "items": [{"order_item_id": order.items[0].id, "lot_code": "LOT-B"}],
    })
    empty = await client.post(f"/api/v1/admin/orders/{order.id}/pack", json={"items": []})

    assert unknown_item.status_code == 400
    assert unknown_item.json()["code"] == "ORDER_ITEM_NOT_FOUND"
    assert wrong_product_lot.status_code == 400
    assert wrong_product_lot.json()["code"] == "LOT_NOT_FOUND"
    assert empty.status_code == 400


# ==================== 发货 ====================

async def test_funded_order_ships_and_completes(client, db, funded_order):
    merchant, product, order = await funded_order()

    created = await client.post("/api/v1/admin/shipments", json={
        "order_id": order.id,
        "carrier": "usps",
        "service": "usps_priority_mail",
    })
    assert created.status_code == 201
    shipment_id = created.json()["data"]["id"]
    assert created.json()["data"]["status"] == ShipmentStatus.PENDING
    await db.refresh(order)
    assert order.status == OrderStatus.PACKED

    shipped = await client.post(f"/api/v1/admin/shipments/{shipment_id}/ship", json={
        "tracking_number": "9400TEST",
        "actual_cost_cents": 700,
    })
    assert shipped.status_code == 200
    assert shipped.json()["data"]["status"] == OrderStatus.SHIPPED
    assert shipped.json()["data"]["actual_total_cents"] == 5_700

    delivered = await client.patch(f"/api/v1/admin/shipments/{shipment_id}", json={"status": ShipmentStatus.DELIVERED})
    assert delivered.status_code == 200
    assert delivered.json()["data"]["status"] == ShipmentStatus.DELIVERED

    await db.refresh(order)
    wallet = await get_wallet(db, merchant.id)
    await db.refresh(wallet)
    inventory = await inventory_of(db, product.id)
    assert order.status == OrderStatus.COMPLETE
    assert wallet.balance_cents == 100_000 - 5_700
    assert wallet.reserved_cents == 0
    assert inventory.reserved == 0


async def test_shipment_status_follows_state_machine(client, db, funded_order):
    _merchant, _product, order = await funded_order()
    created = await client.post("/api/v1/admin/shipments", json={
        "order_id": order.id,
        "carrier": "usps",
        "service": "usps_priority_mail",
    })
    shipment_id = created.json()["data"]["id"]

    skipped = await client.patch(f"/api/v1/admin/shipments/{shipment_id}", json={"status": ShipmentStatus.DELIVERED})
    bogus = await client.patch(f"/api/v1/admin/shipments/{shipment_id}", json={"status": "LOST"})

    assert skipped.status_code == 400
    assert skipped.json()["code"] == "SHIPMENT_INVALID_TRANSITION"
    assert bogus.status_code == 400


# ==================== 退款 ====================

async def test_refund_before_settlement_only_releases_reservation(client, db, funded_order):
    merchant, product, order = await funded_order()

    response = await client.post(f"/api/v1/admin/orders/{order.id}/refund", json={"reason": "Out of stock"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == OrderStatus.REFUNDED
    assert body["refundAmountCents"] == 5_895
    assert body["walletCreditCents"] == 0

    wallet = await get_wallet(db, merchant.id)
    await db.refresh(wallet)
    inventory = await inventory_of(db, product.id)
    refunds = (await db.execute(
        select(WalletTransaction).where(WalletTransaction.type == WalletTransactionType.REFUND)
    )).scalars().all()
    assert wallet.balance_cents == 100_000
    assert wallet.reserved_cents == 0
    assert inventory.reserved == 0
    assert refunds == []

    again = await client.post(f"/api/v1/admin/orders/{order.id}/refund", json={})
    assert again.status_code == 400
    assert again.json()["code"] == "ORDER_ALREADY_REFUNDED"


async def test_refund_after_shipping_credits_wallet(client, db, funded_order):
    merchant, _product, order = await funded_order()
    created = await client.post("/api/v1/admin/shipments", json={
        "order_id": order.id,
        "carrier": "usps",
        "service": "usps_priority_mail",
    })
    await client.post(f"/api/v1/admin/shipments/{created.json()['data']['id']}/ship", json={"actual_cost_cents": 895})

    response = await client.post(f"/api/v1/admin/orders/{order.id}/refund", json={"reason": "Damaged in transit"})

    assert response.status_code == 200
    assert response.json()["walletCreditCents"] == 5_895
    wallet = await get_wallet(db, merchant.id)
    await db.refresh(wallet)
    refund = (await db.execute(
        select(WalletTransaction).where(WalletTransaction.idempotency_key == f"refund-{order.id}")
    )).scalars().one()
    assert wallet.balance_cents == 100_000
    assert refund.type == WalletTransactionType.REFUND
    assert refund.amount_cents == 5_895


async def test_cancelled_order_is_not_refundable(client, db, funded_order):
    _merchant, _product, order = await funded_order()

    cancelled = await client.post(f"/api/v1/admin/orders/{order.id}/cancel", json={"reason": "Duplicate"})
    refund = await client.post(f"/api/v1/admin/orders/{order.id}/refund", json={})

    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["status"] == OrderStatus.CANCELLED
    assert refund.status_code == 400
    assert refund.json()["code"] == "ORDER_NOT_REFUNDABLE"
