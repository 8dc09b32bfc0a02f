# Overview: Wallet-gated unlock of codes delivered before payment was taken.

"""
Reveal Gate

WHY: Orders paid "from wallet later" are fulfilled first and their codes
stay blurred until the customer reveals them, which deducts the order total
from their wallet.

STATE MACHINE (per order):
    PENDING_WALLET_DEDUCTION --(balance >= total)--> SUCCEEDED / DELIVERED, unblurred
    PENDING_WALLET_DEDUCTION --(balance <  total)--> unchanged, InsufficientWalletBalanceError

INVARIANTS:
- Pending check, balance check, debit, ledger row, and order flip are ONE
  transaction (row locks + version_id + run_with_retry). Two concurrent
  reveals deduct exactly once; the loser sees "already revealed".
- A reveal on a non-pending order is a successful no-op.
- The delivery email is sent after commit and never affects the outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..extensions import db
from ..models import Card, CardOrder, Order, Tenant
from ..models.orders import (
    CARD_ORDER_PAYMENT_COMPLETED,
    CARD_ORDER_PAYMENT_PENDING,
    CARD_ORDER_STATUS_PAID,
    ORDER_STATUS_DELIVERED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_SUCCEEDED,
    WALLET_STATE_DEDUCTED,
)
from ..errors import (
    CardNotFoundError,
    DigicardsError,
    OrderNotFoundError,
    WalletNotFoundError,
)
from digicards.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .identity_service import Identity, resolve_identity
from .notification_service import NotificationCard, Notifier
from .wallet_service import debit_locked, get_wallet


logger = logging.getLogger(__name__)


MESSAGE_ALREADY_REVEALED = "Already revealed or paid"
MESSAGE_REVEALED = "Codes revealed successfully"


@dataclass
class RevealResult:
    success: bool
    already_revealed: bool
    message: str
    order_id: int | None = None
    card_order_id: int | None = None
    amount_cents: int = 0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "already_revealed": self.already_revealed,
            "message": self.message,
            "order_id": self.order_id,
            "card_order_id": self.card_order_id,
            "amount_cents": self.amount_cents,
        }


def _owns_order(order: Order, identity: Identity) -> bool:
    if order.user_id and order.user_id in identity.user_ids:
        return True
    if order.legacy_user_id and order.legacy_user_id in identity.user_ids:
        return True
    return bool(identity.email and (order.customer_email or "").strip().lower() == identity.email)


def _resolve_target(tenant_id: int, order_id, card_order_id, card_id) -> tuple[int | None, int | None]:
    """Map the caller's handle onto (storefront order id, card order id)."""
    if card_id is not None:
        card = db.session.query(Card).filter_by(id=card_id, tenant_id=tenant_id).first()
        if not card or card.order_id is None:
            raise CardNotFoundError("Card not found or not eligible for reveal")
        card_order_id = card.order_id

    if order_id is not None:
        return order_id, None

    if card_order_id is not None:
        card_order = db.session.query(CardOrder).filter_by(id=card_order_id, tenant_id=tenant_id).first()
        if not card_order:
            raise OrderNotFoundError("Order not found or not eligible for reveal")
        if card_order.storefront_order_id is not None:
            return card_order.storefront_order_id, None
        return None, card_order.id

    raise OrderNotFoundError("An order, card order, or card id is required")


def _reveal_order(tenant_id: int, order_id: int, identity: Identity) -> tuple[RevealResult, list[NotificationCard], Order]:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id, tenant_id=tenant_id)).first()
    if not order or not _owns_order(order, identity):
        raise OrderNotFoundError("Order not found or not eligible for reveal")

    if not order.is_wallet_pending:
        if order.payment_status == PAYMENT_STATUS_SUCCEEDED and order.requires_reveal:
            logger.info("Unblurring already-paid order %s", order.order_number)
            order.set_wallet_state(WALLET_STATE_DEDUCTED)
            db.session.commit()
        return RevealResult(True, True, MESSAGE_ALREADY_REVEALED, order_id=order.id), [], order

    amount = order.total_amount_cents
    if order.payment_status == PAYMENT_STATUS_PENDING:
        wallet = get_wallet(identity.effective_user_id, lock=True)
        if not wallet:
            raise WalletNotFoundError("Wallet not found")
        debit_locked(
            wallet,
            amount,
            description=f"Payment for revealing order {order.order_number}",
            description_ar=f"دفع لاستلام أكواد الطلب {order.order_number}",
            reference=str(order.id),
        )
    else:
        logger.info("Skipping deduction for order %s (payment status %s)", order.order_number, order.payment_status)
        amount = 0

    order.payment_status = PAYMENT_STATUS_SUCCEEDED
    order.status = ORDER_STATUS_DELIVERED
    order.paid_at = utcnow()
    order.set_wallet_state(WALLET_STATE_DEDUCTED)
    db.session.commit()

    logger.info("Order %s revealed; %s cents deducted from %s", order.order_number, amount, identity.effective_user_id)
    result = RevealResult(True, False, MESSAGE_REVEALED, order_id=order.id, amount_cents=amount)
    return result, _cards_from_delivery(order.delivery_files), order


def _reveal_card_order(tenant_id: int, card_order_id: int, identity: Identity) -> RevealResult:
    card_order = lock_for_update(
        db.session.query(CardOrder).filter_by(id=card_order_id, tenant_id=tenant_id)
    ).first()
    if not card_order or card_order.user_id not in identity.user_ids:
        raise OrderNotFoundError("Order not found or not eligible for reveal")

    if card_order.payment_status != CARD_ORDER_PAYMENT_PENDING:
        return RevealResult(True, True, MESSAGE_ALREADY_REVEALED, card_order_id=card_order.id)

    wallet = get_wallet(identity.effective_user_id, lock=True)
    if not wallet:
        raise WalletNotFoundError("Wallet not found")
    amount = card_order.total_with_tax_cents
    debit_locked(
        wallet,
        amount,
        description=f"Payment for revealing order {card_order.order_number}",
        description_ar=f"دفع لاستلام أكواد الطلب {card_order.order_number}",
        reference=str(card_order.id),
    )
    card_order.payment_status = CARD_ORDER_PAYMENT_COMPLETED
    card_order.status = CARD_ORDER_STATUS_PAID
    card_order.paid_at = utcnow()
    db.session.commit()

    logger.info("Card order %s revealed; %s cents deducted", card_order.order_number, amount)
    return RevealResult(True, False, MESSAGE_REVEALED, card_order_id=card_order.id, amount_cents=amount)


def _cards_from_delivery(delivery_files) -> list[NotificationCard]:
    cards = []
    by_product = (delivery_files or {}).get("serialNumbersByProduct") or {}
    for product_name, entries in by_product.items():
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            serial = entry.get("serialNumber") or entry.get("cardCode") or ""
            pin = entry.get("pin") or entry.get("cardPin")
            if serial or pin:
                cards.append(NotificationCard(product_name, serial, pin))
    return cards


def reveal(
    tenant_id: int,
    user_id: str,
    *,
    order_id: int | None = None,
    card_order_id: int | None = None,
    card_id: int | None = None,
    email: str | None = None,
    notifier: Notifier | None = None,
) -> RevealResult:
    """
    Reveal codes on a wallet-pending order by deducting its total.

    Accepts a storefront order id, a card order id, or the id of one of the
    order's cards.

    Raises:
        InsufficientWalletBalanceError: Nothing was changed
        WalletNotFoundError: The caller has no wallet
        OrderNotFoundError / CardNotFoundError: Unknown or foreign order
    """
    identity = resolve_identity(tenant_id, user_id, email)
    storefront_id, legacy_id = _resolve_target(tenant_id, order_id, card_order_id, card_id)

    def _op():
        if storefront_id is not None:
            return _reveal_order(tenant_id, storefront_id, identity)
        return _reveal_card_order(tenant_id, legacy_id, identity), [], None

    try:
        result, cards, order = run_with_retry(_op)
    except DigicardsError:
        db.session.rollback()
        raise

    # Notifier logs and swallows its own failures
    if cards and order is not None:
        notifier = notifier or Notifier.from_config()
        notifier.send_email(
            tenant=db.session.get(Tenant, tenant_id),
            to_email=email or order.customer_email,
            order_number=order.order_number,
            cards=cards,
        )

    return result
