import hashlib
import hmac
import json

from sqlalchemy import select

from portal.models.billing import MercuryInvoice, MercuryInvoiceStatus
from portal.models.order import OrderStatus
from portal.models.system import Notification, NotificationType, WebhookEvent, WebhookEventStatus
from portal.schemas.store_api import StoreOrderCreate
from portal.services.mercury_billing import check_balances, create_wallet_invoice, invoice_amount_for, sync_invoices
from portal.services.order_flow import ingest_store_order
from portal.services.wallet import get_wallet
from tests.factories import ADMIN_EMAIL, allow_product, create_admin, create_merchant, create_product, create_store

WEBHOOK_SECRET = "mercury-webhook-secret"


async def billed_merchant(db, balance_cents=0):
    return await create_merchant(
        db,
        balance_cents=balance_cents,
        mercury_customer_id="cust-existing",
        billing_email="ap@acme.com",
    )


def webhook_headers(body: bytes, secret: str = WEBHOOK_SECRET) -> dict:
    return {
        "content-type": "application/json",
        "x-mercury-signature": hmac.new(secret.encode(), body, hashlib.sha256).hexdigest(),
    }


async def test_invoice_amount_tops_up_to_target(db):
    merchant = await billed_merchant(db, balance_cents=250_000)
    wallet = await get_wallet(db, merchant.id)

    assert invoice_amount_for(merchant, wallet) == 50_000
    assert invoice_amount_for(merchant, None) == 300_000

    wallet.balance_cents = 299_999
    assert invoice_amount_for(merchant, wallet) == 10_000


async def test_paid_invoice_is_credited_once(db, mercury_client, mercury_stub, outbox, email_client):
    merchant = await billed_merchant(db)
    invoice = await create_wallet_invoice(db, mercury_client, merchant, 100_000, email_client=email_client)
    await db.commit()
    assert invoice.payment_url == "https://app.mercury.com/pay/slug-inv-1"
    assert invoice.invoice_number == "INV-0001"

    mercury_stub.set_status(invoice.mercury_invoice_id, MercuryInvoiceStatus.PAID)
    summary = await sync_invoices(db, mercury_client, email_client)

    wallet = await get_wallet(db, merchant.id)
    await db.refresh(invoice)
    assert summary["credited"] == 1
    assert summary["errors"] == 0
    assert wallet.balance_cents == 100_000
    assert invoice.status == MercuryInvoiceStatus.PAID
    assert invoice.wallet_credited is True
    assert invoice.wallet_transaction_id is not None
    # 开票 + 到账各一封
    assert [mail["to"] for mail in outbox] == [["ap@acme.com"], ["ap@acme.com"]]

    again = await sync_invoices(db, mercury_client, email_client)
    wallet = await get_wallet(db, merchant.id)
    assert again["invoicesChecked"] == 0
    assert wallet.balance_cents == 100_000


async def test_processing_invoice_is_not_credited(db, mercury_client, mercury_stub):
    merchant = await billed_merchant(db)
    invoice = await create_wallet_invoice(db, mercury_client, merchant, 20_000)
    await db.commit()

    mercury_stub.set_status(invoice.mercury_invoice_id, MercuryInvoiceStatus.PROCESSING)
    summary = await sync_invoices(db, mercury_client)

    wallet = await get_wallet(db, merchant.id)
    await db.refresh(invoice)
    assert summary == {"invoicesChecked": 1, "credited": 0, "statusUpdates": 1, "errors": 0, "fundedOrders": 0}
    assert invoice.status == MercuryInvoiceStatus.PROCESSING
    assert wallet.balance_cents == 0


async def test_payment_funds_awaiting_orders(db, mercury_client, mercury_stub):
    merchant = await billed_merchant(db, balance_cents=10_000)
    product = await create_product(db)
    await allow_product(db, merchant, product)
    store = await create_store(db, merchant)
    result = await ingest_store_order(db, store, StoreOrderCreate(
        woo_order_id="3001",
        shipping_address={"address_1": "1 Lab Way", "city": "Austin", "postcode": "78701", "country": "US"},
        items=[{"supplier_sku": "BPC157-5MG", "qty": 1}],
    ))
    await db.commit()
    assert result["status"] == OrderStatus.AWAITING_FUNDS

    invoice = await create_wallet_invoice(db, mercury_client, merchant, 100_000)
    await db.commit()
    mercury_stub.set_status(invoice.mercury_invoice_id, MercuryInvoiceStatus.PAID)
    summary = await sync_invoices(db, mercury_client)

    await db.refresh(result["order"])
    assert summary["fundedOrders"] == 1
    assert result["order"].status == OrderStatus.FUNDED


async def test_low_balance_check_skips_merchants_with_open_invoices(db, mercury_client, mercury_stub):
    merchant = await billed_merchant(db, balance_cents=60_000)

    first = await check_balances(db, mercury_client)
    second = await check_balances(db, mercury_client)

    invoices = (await db.execute(select(MercuryInvoice).where(MercuryInvoice.merchant_id == merchant.id))).scalars().all()
    assert first["invoicesCreated"] == 1
    assert second == {"merchantsChecked": 1, "invoicesCreated": 0, "skipped": 1}
    assert [inv.amount_cents for inv in invoices] == [300_000 - 60_000]


async def test_admin_creates_and_cancels_invoice(client, db, auth, mercury_stub):
    merchant = await billed_merchant(db)
    await create_admin(db)
    auth.login("user-admin-1", ADMIN_EMAIL)

    created = await client.post("/api/v1/admin/mercury/invoices", json={"merchant_id": merchant.id, "amount_cents": 25_000})
    assert created.status_code == 200
    invoice = created.json()["data"]
    assert invoice["amount_cents"] == 25_000
    assert ("POST", "/ar/invoices") in mercury_stub.requests

    notifications = (await db.execute(
        select(Notification).where(Notification.merchant_id == merchant.id)
    )).scalars().all()
    assert [n.type for n in notifications] == [NotificationType.INVOICE_CREATED]

    cancelled = await client.post("/api/v1/admin/mercury/invoices", params={"action": "cancel", "id": invoice["id"]})
    assert cancelled.status_code == 200
    row = await db.get(MercuryInvoice, invoice["id"])
    await db.refresh(row)
    assert row.status == MercuryInvoiceStatus.CANCELLED

    again = await client.post("/api/v1/admin/mercury/invoices", params={"action": "cancel", "id": invoice["id"]})
    assert again.status_code == 400
    assert again.json()["code"] == "INVOICE_NOT_CANCELLABLE"


async def test_failed_remote_cancel_keeps_invoice_open(client, db, auth, mercury_stub):
    merchant = await billed_merchant(db)
    await create_admin(db)
    auth.login("user-admin-1", ADMIN_EMAIL)
    invoice = (await client.post(
        "/api/v1/admin/mercury/invoices", json={"merchant_id": merchant.id, "amount_cents": 25_000}
    )).json()["data"]

    mercury_stub.fail_cancel = True
    response = await client.post("/api/v1/admin/mercury/invoices", params={"action": "cancel", "id": invoice["id"]})

    assert response.status_code == 502
    assert response.json()["code"] == "MERCURY_CANCEL_FAILED"
    row = await db.get(MercuryInvoice, invoice["id"])
    assert row.status == MercuryInvoiceStatus.UNPAID


async def test_admin_account_overview(client, db, auth):
    await create_admin(db)
    auth.login("user-admin-1", ADMIN_EMAIL)

    response = await client.get("/api/v1/admin/mercury/account")

    assert response.json()["data"] == {
        "name": "Operating Checking",
        "availableBalance": 12500.5,
        "currentBalance": 13000.0,
        "status": "active",
    }


async def test_webhook_rejects_bad_signature(client):
    body = json.dumps({"id": "evt-1", "type": "checkingAccount.balance.updated"}).encode()

    response = await client.post("/api/v1/webhooks/mercury", content=body, headers=webhook_headers(body, "wrong"))

    assert response.status_code == 401
    assert response.json()["error"] == "Invalid signature"


async def test_webhook_balance_event_syncs_and_deduplicates(client, db, mercury_client, mercury_stub):
    merchant = await billed_merchant(db)
    invoice = await create_wallet_invoice(db, mercury_client, merchant, 40_000)
    await db.commit()
    mercury_stub.set_status(invoice.mercury_invoice_id, MercuryInvoiceStatus.PAID)
    body = json.dumps({"id": "evt-2", "type": "checkingAccount.balance.updated"}).encode()

    first = await client.post("/api/v1/webhooks/mercury", content=body, headers=webhook_headers(body))
    assert first.json() == {"received": True, "synced": True}

    second = await client.post("/api/v1/webhooks/mercury", content=body, headers=webhook_headers(body))
    assert second.json() == {"received": True, "duplicate": True}

    wallet = await get_wallet(db, merchant.id)
    event = (await db.execute(select(WebhookEvent))).scalars().one()
    await db.refresh(event)
    await db.refresh(wallet)
    assert wallet.balance_cents == 40_000
    assert event.status == WebhookEventStatus.COMPLETED
    assert event.idempotency_key == "webhook:mercury:evt-2:checkingAccount.balance.updated"


async def test_webhook_transaction_without_matching_invoice_is_recorded_only(client, db, mercury_client):
    merchant = await billed_merchant(db)
    await create_wallet_invoice(db, mercury_client, merchant, 40_000)
    await db.commit()
    body = json.dumps({"id": "evt-3", "type": "transaction.created", "data": {"amount": 123.45}}).encode()

    response = await client.post("/api/v1/webhooks/mercury", content=body, headers=webhook_headers(body))

    assert response.json() == {"received": True, "synced": False}
