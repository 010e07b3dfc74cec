import pytest
from sqlalchemy import func, select

from portal.models.wallet import WalletTransaction, WalletTransactionType
from portal.services.errors import WalletInsufficientBalanceError, WalletNotFoundError
from portal.services.wallet import adjust_balance, available_for_orders, get_wallet, wallet_summary
from tests.factories import create_merchant


async def test_adjust_balance_records_balance_after(db):
    merchant = await create_merchant(db, balance_cents=10_000)

    transaction = await adjust_balance(db, merchant.id, 2_500, WalletTransactionType.TOPUP, idempotency_key="topup-1")
    await db.commit()

    wallet = await get_wallet(db, merchant.id)
    assert wallet.balance_cents == 12_500
    assert transaction.balance_after_cents == 12_500
    assert transaction.amount_cents == 2_500


async def test_adjust_balance_is_idempotent(db):
    merchant = await create_merchant(db, balance_cents=0)

    first = await adjust_balance(db, merchant.id, 5_000, WalletTransactionType.TOPUP, idempotency_key="topup-dup")
    second = await adjust_balance(db, merchant.id, 5_000, WalletTransactionType.TOPUP, idempotency_key="topup-dup")
    await db.commit()

    count = (await db.execute(select(func.count(WalletTransaction.id)))).scalar()
    wallet = await get_wallet(db, merchant.id)
    assert second.id == first.id
    assert count == 1
    assert wallet.balance_cents == 5_000


async def test_adjust_balance_never_goes_negative(db):
    merchant = await create_merchant(db, balance_cents=1_000)

    with pytest.raises(WalletInsufficientBalanceError):
        await adjust_balance(db, merchant.id, -1_001, WalletTransactionType.ADJUSTMENT)


async def test_adjust_balance_requires_wallet_unless_asked_to_create(db):
    merchant = await create_merchant(db)

    with pytest.raises(WalletNotFoundError):
        await adjust_balance(db, merchant.id, 100, WalletTransactionType.TOPUP)

    await adjust_balance(db, merchant.id, 100, WalletTransactionType.TOPUP, create_wallet=True)
    wallet = await get_wallet(db, merchant.id)
    assert wallet.balance_cents == 100


async def test_available_for_orders_keeps_compliance_reserve(db):
    merchant = await create_merchant(db, balance_cents=80_000, reserved_cents=10_000)
    wallet = await get_wallet(db, merchant.id)

    assert available_for_orders(wallet) == 80_000 - 10_000 - 50_000
    assert available_for_orders(None) == -50_000
    assert wallet_summary(wallet) == {
        "balance_cents": 80_000,
        "reserved_cents": 10_000,
        "available_cents": 70_000,
        "compliance_reserve_cents": 50_000,
    }
