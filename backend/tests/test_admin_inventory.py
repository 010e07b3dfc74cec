from sqlalchemy import select

from portal.models.catalog import Inventory
from portal.models.system import AuditEvent
from tests.factories import ADMIN_EMAIL, create_admin, create_product


async def login_admin(db, auth):
    admin = await create_admin(db)
    auth.login("user-admin-1", ADMIN_EMAIL)
    return admin


async def inventory_of(db, product_id: str) -> Inventory:
    result = await db.execute(select(Inventory).where(Inventory.product_id == product_id))
    inventory = result.scalars().first()
    await db.refresh(inventory)
    return inventory


async def test_admin_endpoints_require_admin(client, auth):
    anonymous = await client.get("/api/v1/admin/inventory")
    assert anonymous.status_code == 401

    auth.login("user-x", "someone@else.com")
    not_admin = await client.get("/api/v1/admin/inventory")
    assert not_admin.status_code == 401


async def test_create_product_uppercases_sku_and_rejects_duplicates(client, db, auth):
    await login_admin(db, auth)

    created = await client.post("/api/v1/admin/inventory", json={
        "sku": " tb500-10mg ",
        "name": "TB-500 10mg",
        "category": "Peptides",
        "wholesale_price_cents": 4200,
        "on_hand": 12,
    })
    assert created.status_code == 201
    assert created.json()["data"]["sku"] == "TB500-10MG"

    duplicate = await client.post("/api/v1/admin/inventory", json={
        "sku": "TB500-10MG",
        "name": "Duplicate",
        "cost_cents": 100,
    })
    assert duplicate.status_code == 409
    assert "TB500-10MG" in duplicate.json()["error"]

    listing = await client.get("/api/v1/admin/inventory", params={"search": "tb500"})
    item = listing.json()["data"][0]
    assert item["cost_cents"] == 4200
    assert item["on_hand"] == 12
    assert item["available"] == 12


async def test_update_inventory_writes_audit_event(client, db, auth):
    await login_admin(db, auth)
    product = await create_product(db, on_hand=5)

    response = await client.patch("/api/v1/admin/inventory", json={
        "product_id": product.id,
        "on_hand": 40,
        "reason": "Cycle count",
    })

    assert response.status_code == 200
    assert response.json()["data"]["on_hand"] == 40
    events = (await db.execute(
        select(AuditEvent).where(AuditEvent.action == "inventory.adjusted")
    )).scalars().all()
    assert len(events) == 1
    assert events[0].actor_email == ADMIN_EMAIL


async def test_low_stock_filter(client, db, auth):
    await login_admin(db, auth)
    await create_product(db, "LOW-1", name="Low", on_hand=3)
    await create_product(db, "HIGH-1", name="High", on_hand=300)

    response = await client.get("/api/v1/admin/inventory", params={"low_stock": "true"})

    assert [item["sku"] for item in response.json()["data"]] == ["LOW-1"]


async def test_lot_quantity_moves_on_hand(client, db, auth, storage_requests):
    await login_admin(db, auth)
    product = await create_product(db, on_hand=10)

    created = await client.post(
        "/api/v1/admin/lots",
        data={"product_id": product.id, "lot_code": "L-2026-01", "quantity": "25", "expires_at": "2027-06-30"},
        files={"coa": ("coa.pdf", b"%PDF-1.4 test", "application/pdf")},
    )
    assert created.status_code == 201
    lot = created.json()["data"]
    assert lot["coa_storage_path"] == f"{product.id}/L-2026-01.pdf"
    assert lot["expires_at"] == "2027-06-30"
    assert any("lot-coas" in path for _method, path in storage_requests)
    assert (await inventory_of(db, product.id)).on_hand == 35

    duplicate = await client.post(
        "/api/v1/admin/lots",
        data={"product_id": product.id, "lot_code": "L-2026-01", "quantity": "1"},
    )
    assert duplicate.status_code == 409

    deleted = await client.delete("/api/v1/admin/lots", params={"id": lot["id"]})
    assert deleted.status_code == 200
    assert (await inventory_of(db, product.id)).on_hand == 10


async def test_lot_delete_never_drives_on_hand_negative(client, db, auth):
    await login_admin(db, auth)
    product = await create_product(db, on_hand=0)
    lot = (await client.post(
        "/api/v1/admin/lots",
        data={"product_id": product.id, "lot_code": "L-1", "quantity": "8"},
    )).json()["data"]

    await client.patch("/api/v1/admin/inventory", json={"product_id": product.id, "on_hand": 3})
    await client.delete("/api/v1/admin/lots", params={"id": lot["id"]})

    assert (await inventory_of(db, product.id)).on_hand == 0


async def test_lot_validation(client, db, auth):
    await login_admin(db, auth)
    product = await create_product(db)

    missing = await client.get("/api/v1/admin/lots")
    assert missing.status_code == 400

    not_pdf = await client.post(
        "/api/v1/admin/lots",
        data={"product_id": product.id, "lot_code": "L-2"},
        files={"coa": ("coa.txt", b"plain text", "text/plain")},
    )
    assert not_pdf.status_code == 400
    assert not_pdf.json()["error"] == "COA must be a PDF file"
