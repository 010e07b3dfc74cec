from sqlalchemy import select

from portal.core.config import settings
from portal.models.merchant import MerchantStatus
from portal.models.wallet import WalletTransaction, WalletTransactionType, WithdrawalStatus
from portal.services.wallet import get_wallet
from tests.factories import ADMIN_EMAIL, OWNER_EMAIL, OWNER_USER_ID, create_admin, create_merchant


async def request_withdrawal(client, db, auth, balance_cents=80_000, reserved_cents=5_000):
    merchant = await create_merchant(db, balance_cents=balance_cents, reserved_cents=reserved_cents)
    auth.login(OWNER_USER_ID, OWNER_EMAIL)
    response = await client.post("/api/v1/merchant/withdraw")
    assert response.status_code == 200
    return merchant, response.json()["data"]


async def as_admin(db, auth):
    await create_admin(db)
    auth.login("user-admin-1", ADMIN_EMAIL)


async def test_withdrawal_debits_available_balance_and_closes_account(client, db, auth, outbox):
    merchant, withdrawal = await request_withdrawal(client, db, auth)

    wallet = await get_wallet(db, merchant.id)
    await db.refresh(merchant)
    assert withdrawal["amount_cents"] == 75_000
    assert withdrawal["status"] == WithdrawalStatus.PENDING_ADMIN
    assert wallet.balance_cents == 5_000
    assert merchant.status == MerchantStatus.CLOSING
    assert outbox[0]["to"] == [settings.WITHDRAWAL_NOTIFY_EMAIL]

    again = await client.post("/api/v1/merchant/withdraw")
    assert again.status_code == 400
    assert again.json()["error"] == "Account is already closing or closed"


async def test_withdrawal_requires_available_balance(client, db, auth):
    await create_merchant(db, balance_cents=1_000, reserved_cents=1_000)
    auth.login(OWNER_USER_ID, OWNER_EMAIL)

    response = await client.post("/api/v1/merchant/withdraw")

    assert response.status_code == 400
    assert response.json()["error"] == "No available balance to withdraw"


async def test_completing_withdrawal_closes_merchant_once(client, db, auth):
    merchant, withdrawal = await request_withdrawal(client, db, auth)
    await as_admin(db, auth)

    completed = await client.patch("/api/v1/admin/withdrawals", json={
        "id": withdrawal["id"],
        "status": WithdrawalStatus.COMPLETED,
        "admin_notes": "Sent via ACH",
    })
    assert completed.status_code == 200
    await db.refresh(merchant)
    assert merchant.status == MerchantStatus.CLOSED

    entries = (await db.execute(
        select(WalletTransaction).where(WalletTransaction.type == WalletTransactionType.USD_WITHDRAWAL_COMPLETED)
    )).scalars().all()
    assert [e.amount_cents for e in entries] == [0]

    twice = await client.patch("/api/v1/admin/withdrawals", json={
        "id": withdrawal["id"],
        "status": WithdrawalStatus.COMPLETED,
    })
    assert twice.status_code == 400
    assert twice.json()["error"] == "Withdrawal is already completed"


async def test_rejecting_withdrawal_refunds_and_reactivates(client, db, auth):
    merchant, withdrawal = await request_withdrawal(client, db, auth)
    await as_admin(db, auth)

    response = await client.patch("/api/v1/admin/withdrawals", json={
        "id": withdrawal["id"],
        "status": WithdrawalStatus.REJECTED,
    })

    assert response.status_code == 200
    wallet = await get_wallet(db, merchant.id)
    await db.refresh(wallet)
    await db.refresh(merchant)
    assert wallet.balance_cents == 80_000
    assert merchant.status == MerchantStatus.ACTIVE

    listing = await client.get("/api/v1/admin/withdrawals", params={"status": WithdrawalStatus.REJECTED})
    assert [w["id"] for w in listing.json()["data"]] == [withdrawal["id"]]
