"""
钱包服务 - 余额变动、预留、幂等

所有余额变动都走 adjust_balance：
1. 幂等键已存在 → 直接返回原流水（不重复记账）
2. 锁定钱包行（Postgres FOR UPDATE）
3. 变动后余额 < 0 → WalletInsufficientBalanceError
4. 写入流水，记录变动后余额

函数只 flush 不 commit，由调用方决定事务边界。
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.models.billing import COMPLIANCE_RESERVE_CENTS
from portal.models.wallet import WalletAccount, WalletTransaction
from portal.services.errors import WalletInsufficientBalanceError, WalletNotFoundError, WalletOperationError

logger = logging.getLogger(__name__)


async def get_wallet(db: AsyncSession, merchant_id: str, currency: str = "USD", lock: bool = False) -> Optional[WalletAccount]:
    query = select(WalletAccount).where(
        WalletAccount.merchant_id == merchant_id,
        WalletAccount.currency == currency,
    )
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalars().first()


async def get_or_create_wallet(db: AsyncSession, merchant_id: str, currency: str = "USD") -> WalletAccount:
    wallet = await get_wallet(db, merchant_id, currency)
    if wallet:
        return wallet
    wallet = WalletAccount(merchant_id=merchant_id, currency=currency, balance_cents=0, reserved_cents=0)
    db.add(wallet)
    await db.flush()
    logger.info(f"💰 创建钱包: merchant={merchant_id} currency={currency}")
    return wallet


async def find_transaction_by_key(db: AsyncSession, idempotency_key: str) -> Optional[WalletTransaction]:
    result = await db.execute(
        select(WalletTransaction).where(WalletTransaction.idempotency_key == idempotency_key)
    )
    return result.scalars().first()


async def adjust_balance(
    db: AsyncSession,
    merchant_id: str,
    amount_cents: int,
    transaction_type: str,
    *,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    description: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    currency: str = "USD",
    create_wallet: bool = False,
) -> WalletTransaction:
    """
    变动钱包余额（正数入账，负数扣款）
    """
    if not isinstance(amount_cents, int):
        raise WalletOperationError(f"amount_cents must be an integer, got {amount_cents!r}")

    if idempotency_key:
        existing = await find_transaction_by_key(db, idempotency_key)
        if existing:
            logger.info(f"钱包流水已存在，跳过: key={idempotency_key}")
            return existing

    wallet = await get_wallet(db, merchant_id, currency, lock=True)
    if not wallet:
        if not create_wallet:
            raise WalletNotFoundError(merchant_id, currency)
        wallet = await get_or_create_wallet(db, merchant_id, currency)

    new_balance = (wallet.balance_cents or 0) + amount_cents
    if new_balance < 0:
        raise WalletInsufficientBalanceError(wallet.balance_cents or 0, amount_cents)

    wallet.balance_cents = new_balance
    transaction = WalletTransaction(
        merchant_id=merchant_id,
        wallet_id=wallet.id,
        type=transaction_type,
        amount_cents=amount_cents,
        balance_after_cents=new_balance,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        idempotency_key=idempotency_key,
        extra_data=metadata,
    )
    db.add(transaction)
    await db.flush()

    logger.info(
        f"💰 钱包变动: merchant={merchant_id} type={transaction_type} "
        f"amount={amount_cents} balance_after={new_balance}"
    )
    return transaction


def adjust_reserved(wallet: WalletAccount, delta_cents: int) -> int:
    """调整预留金额（不低于 0），返回新的预留值"""
    wallet.reserved_cents = max(0, (wallet.reserved_cents or 0) + delta_cents)
    return wallet.reserved_cents


def available_for_orders(wallet: Optional[WalletAccount]) -> int:
    """下单可用余额 = 余额 - 预留 - 合规保证金"""
    if not wallet:
        return -COMPLIANCE_RESERVE_CENTS
    return wallet.available_cents - COMPLIANCE_RESERVE_CENTS


def wallet_summary(wallet: Optional[WalletAccount]) -> Dict[str, int]:
    balance = wallet.balance_cents if wallet else 0
    reserved = wallet.reserved_cents if wallet else 0
    return {
        "balance_cents": balance or 0,
        "reserved_cents": reserved or 0,
        "available_cents": (balance or 0) - (reserved or 0),
        "compliance_reserve_cents": COMPLIANCE_RESERVE_CENTS,
    }
