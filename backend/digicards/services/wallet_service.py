# Overview: Service-layer operations for customer wallets; balance reads, credits, and debits.

"""
Wallet Service

DESIGN PRINCIPLES:
- Balance changes always write a WalletTransaction with before/after
  balances in the same DB transaction.
- Debits take a row lock on the wallet and rely on version_id optimistic
  locking; callers wrap them in run_with_retry.
- The balance never goes negative (also enforced by a CHECK constraint).
"""

from __future__ import annotations

from ..extensions import db
from ..models import Wallet, WalletTransaction
from ..models.wallet import WALLET_TX_COMPLETED, WALLET_TX_PURCHASE, WALLET_TX_TOPUP
from ..errors import DigicardsError, InsufficientWalletBalanceError, WalletNotFoundError
from .concurrency import lock_for_update, run_with_retry


def get_wallet(user_id: str, *, lock: bool = False) -> Wallet | None:
    query = db.session.query(Wallet).filter_by(user_id=user_id)
    if lock:
        query = lock_for_update(query)
    return query.first()


def get_or_create_wallet(user_id: str, tenant_id: int | None = None, currency: str = "SAR") -> Wallet:
    wallet = get_wallet(user_id)
    if wallet:
        return wallet
    wallet = Wallet(user_id=user_id, tenant_id=tenant_id, balance_cents=0, currency=currency)
    db.session.add(wallet)
    db.session.commit()
    return wallet


def get_balance(user_id: str) -> int:
    wallet = get_wallet(user_id)
    return wallet.balance_cents if wallet else 0


def has_sufficient_balance(user_id: str, amount_cents: int) -> bool:
    return get_balance(user_id) >= amount_cents


def _append_transaction(
    wallet: Wallet,
    amount_cents: int,
    tx_type: str,
    *,
    description: str | None,
    description_ar: str | None,
    reference: str | None,
) -> WalletTransaction:
    before = wallet.balance_cents
    wallet.balance_cents = before + amount_cents
    tx = WalletTransaction(
        wallet_id=wallet.id,
        type=tx_type,
        amount_cents=amount_cents,
        balance_before_cents=before,
        balance_after_cents=wallet.balance_cents,
        currency=wallet.currency,
        description=description,
        description_ar=description_ar,
        reference=reference,
        status=WALLET_TX_COMPLETED,
    )
    db.session.add(tx)
    return tx


def debit_locked(
    wallet: Wallet,
    amount_cents: int,
    *,
    description: str | None = None,
    description_ar: str | None = None,
    reference: str | None = None,
) -> WalletTransaction:
    """
    Deduct from a wallet the caller already holds locked. Does not commit.

    Raises:
        InsufficientWalletBalanceError: balance_cents < amount_cents
    """
    if amount_cents < 0:
        raise DigicardsError("Debit amount must not be negative")
    if wallet.balance_cents < amount_cents:
        raise InsufficientWalletBalanceError(wallet.balance_cents, amount_cents)
    return _append_transaction(
        wallet,
        -amount_cents,
        WALLET_TX_PURCHASE,
        description=description,
        description_ar=description_ar,
        reference=reference,
    )


def debit(
    user_id: str,
    amount_cents: int,
    *,
    description: str | None = None,
    description_ar: str | None = None,
    reference: str | None = None,
) -> WalletTransaction:
    """Lock, check, deduct, and commit in one transaction."""
    def _op():
        wallet = get_wallet(user_id, lock=True)
        if not wallet:
            raise WalletNotFoundError("Wallet not found")
        tx = debit_locked(
            wallet,
            amount_cents,
            description=description,
            description_ar=description_ar,
            reference=reference,
        )
        db.session.commit()
        return tx

    try:
        return run_with_retry(_op)
    except DigicardsError:
        db.session.rollback()
        raise


def credit(
    user_id: str,
    amount_cents: int,
    *,
    tenant_id: int | None = None,
    description: str | None = None,
    reference: str | None = None,
    tx_type: str = WALLET_TX_TOPUP,
) -> WalletTransaction:
    """Add funds, creating the wallet on first use."""
    if amount_cents <= 0:
        raise DigicardsError("Credit amount must be positive")

    def _op():
        wallet = get_wallet(user_id, lock=True)
        if not wallet:
            wallet = Wallet(user_id=user_id, tenant_id=tenant_id, balance_cents=0)
            db.session.add(wallet)
            db.session.flush()
        tx = _append_transaction(
            wallet,
            amount_cents,
            tx_type,
            description=description,
            description_ar=None,
            reference=reference,
        )
        db.session.commit()
        return tx

    return run_with_retry(_op)
