# Overview: Service-layer operations for the local card store; reservation, sale, ownership upserts.

"""
Local Card Inventory Store

WHY: Cards held in local stock are the first source for fulfillment. Every
code a customer ever receives (local or supplier-sourced) also ends up here
so the customer's inventory has a single durable home.

INVARIANTS:
- Reservation is all-or-nothing and is ONE conditional UPDATE, never a
  read-then-write pair. Two concurrent orders never receive the same card.
- (tenant_id, card_code) is unique. A duplicate insert switches to the
  update path instead of surfacing IntegrityError.
- SOLD never goes back to AVAILABLE. Only RESERVED cards can be released.
- upsert_ownership writes only changed fields; a repeated call is a no-op.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Card, Product
from ..models.cards import (
    CARD_STATUS_AVAILABLE,
    CARD_STATUS_RESERVED,
    CARD_STATUS_SOLD,
    CARD_STATUS_USED,
    CARD_STATUS_EXPIRED,
)
from ..errors import (
    CardOwnershipConflictError,
    InsufficientStockError,
    InvalidCardStateError,
    ProductNotFoundError,
)
from digicards.time_utils import utcnow
from .concurrency import commit_with_retry, lock_for_update, run_with_retry


logger = logging.getLogger(__name__)


UPSERT_CREATED = "CREATED"
UPSERT_UPDATED = "UPDATED"
UPSERT_UNCHANGED = "UNCHANGED"

# Statuses an ownership upsert may promote to SOLD
_PROMOTABLE_STATUSES = (CARD_STATUS_AVAILABLE, CARD_STATUS_RESERVED)


@dataclass
class ImportReport:
    imported: int = 0
    skipped: int = 0


def _unexpired(now: datetime):
    return or_(Card.expiry_date.is_(None), Card.expiry_date > now)


def count_available(product_id: int) -> int:
    now = utcnow()
    return (
        db.session.query(Card)
        .filter(Card.product_id == product_id, Card.status == CARD_STATUS_AVAILABLE)
        .filter(_unexpired(now))
        .count()
    )


# =============================================================================
# RESERVATION
# =============================================================================

def reserve_cards(product_id: int, quantity: int, order_ref: int) -> list[int]:
    """
    Atomically reserve `quantity` available cards for a fulfillment order.

    The candidate ids come from a FOR UPDATE SKIP LOCKED subquery and the
    UPDATE re-checks status = AVAILABLE, so on any backend the rowcount tells
    us exactly how many rows this caller won. A short count rolls back the
    whole statement.

    Args:
        product_id: Product to reserve stock for
        quantity: Number of cards required
        order_ref: card_orders.id the cards are reserved against

    Returns:
        Reserved card ids (oldest imports first)

    Raises:
        InsufficientStockError: Fewer than `quantity` cards were available
    """
    if quantity <= 0:
        raise InvalidCardStateError("Reservation quantity must be positive")

    def _op():
        now = utcnow()
        token = uuid.uuid4().hex

        candidates = lock_for_update(
            db.session.query(Card.id)
            .filter(Card.product_id == product_id, Card.status == CARD_STATUS_AVAILABLE)
            .filter(_unexpired(now))
            .order_by(Card.imported_at.asc(), Card.id.asc())
            .limit(quantity),
            skip_locked=True,
        )

        won = (
            db.session.query(Card)
            .filter(Card.id.in_(candidates.scalar_subquery()))
            .filter(Card.status == CARD_STATUS_AVAILABLE)
            .update(
                {
                    Card.status: CARD_STATUS_RESERVED,
                    Card.order_id: order_ref,
                    Card.reservation_token: token,
                    Card.updated_at: now,
                },
                synchronize_session=False,
            )
        )

        if won < quantity:
            db.session.rollback()
            available = count_available(product_id)
            raise InsufficientStockError(available, quantity)

        card_ids = [
            row.id
            for row in db.session.query(Card.id)
            .filter(Card.reservation_token == token)
            .order_by(Card.imported_at.asc(), Card.id.asc())
            .all()
        ]
        db.session.commit()
        return card_ids

    card_ids = run_with_retry(_op, attempts=5)
    logger.info("Reserved %s card(s) for product %s on card order %s", len(card_ids), product_id, order_ref)
    return card_ids


def mark_as_sold(card_ids: list[int], owner_id: str | None, order_id: int) -> int:
    """
    Move reserved cards to SOLD.

    Raises:
        InvalidCardStateError: One or more cards were not RESERVED for this order
    """
    if not card_ids:
        return 0

    def _op():
        now = utcnow()
        updated = (
            db.session.query(Card)
            .filter(
                Card.id.in_(card_ids),
                Card.status == CARD_STATUS_RESERVED,
                Card.order_id == order_id,
            )
            .update(
                {
                    Card.status: CARD_STATUS_SOLD,
                    Card.sold_to_user_id: owner_id,
                    Card.sold_at: now,
                    Card.reservation_token: None,
                    Card.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if updated != len(card_ids):
            db.session.rollback()
            raise InvalidCardStateError(
                f"Expected {len(card_ids)} reserved card(s) on order {order_id}, found {updated}"
            )
        db.session.commit()
        return updated

    return run_with_retry(_op)


def release_cards(card_ids: list[int]) -> int:
    """Return RESERVED cards to AVAILABLE. SOLD cards are left untouched."""
    if not card_ids:
        return 0

    def _op():
        released = (
            db.session.query(Card)
            .filter(Card.id.in_(card_ids), Card.status == CARD_STATUS_RESERVED)
            .update(
                {
                    Card.status: CARD_STATUS_AVAILABLE,
                    Card.order_id: None,
                    Card.reservation_token: None,
                    Card.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        db.session.commit()
        return released

    released = run_with_retry(_op)
    if released:
        logger.info("Released %s reserved card(s)", released)
    return released


# =============================================================================
# OWNERSHIP
# =============================================================================

def _find_card(tenant_id: int, card_code: str) -> Card | None:
    return db.session.query(Card).filter_by(tenant_id=tenant_id, card_code=card_code).first()


def _apply_ownership(
    card: Card,
    owner_id: str | None,
    pin: str | None,
    product_id: int | None,
    order_id: int | None,
    sold_at: datetime | None,
) -> bool:
    changed = False

    # A missing owner never clears an existing one
    if owner_id is not None and card.sold_to_user_id != owner_id:
        card.sold_to_user_id = owner_id
        changed = True

    if pin and card.card_pin != pin:
        card.card_pin = pin
        changed = True

    if card.status in _PROMOTABLE_STATUSES:
        card.status = CARD_STATUS_SOLD
        card.reservation_token = None
        card.sold_at = card.sold_at or sold_at or utcnow()
        changed = True

    if product_id is not None and card.product_id is None:
        card.product_id = product_id
        changed = True

    if order_id is not None and card.order_id is None:
        card.order_id = order_id
        changed = True

    return changed


def upsert_ownership(
    tenant_id: int,
    card_code: str,
    owner_id: str | None,
    pin: str | None = None,
    *,
    product_id: int | None = None,
    order_id: int | None = None,
    sold_at: datetime | None = None,
    reassign: bool = True,
) -> str:
    """
    Create or update the card row for (tenant_id, card_code).

    WHY: Supplier codes and codes rediscovered from historical orders are
    recorded through this single path, so calling it repeatedly with the
    same inputs must not produce extra writes.

    Args:
        reassign: When False, a card already owned by someone other than
            owner_id is left untouched. Only inventory healing passes True
            after deciding the current owner may be replaced.

    Returns:
        UPSERT_CREATED, UPSERT_UPDATED, or UPSERT_UNCHANGED

    Raises:
        CardOwnershipConflictError: reassign is False and the card has a
            different owner
    """
    card_code = (card_code or "").strip()
    if not card_code:
        raise InvalidCardStateError("Card code is required")

    card = _find_card(tenant_id, card_code)
    if card is None:
        if product_id is None:
            raise ProductNotFoundError(f"Product is required to record new card {card_code!r}")
        card = Card(
            tenant_id=tenant_id,
            product_id=product_id,
            card_code=card_code,
            card_pin=pin or None,
            status=CARD_STATUS_SOLD,
            sold_to_user_id=owner_id,
            order_id=order_id,
            sold_at=sold_at or utcnow(),
        )
        db.session.add(card)
        try:
            db.session.commit()
            return UPSERT_CREATED
        except IntegrityError:
            # Lost an insert race; the row exists now, so update it instead
            db.session.rollback()
            card = _find_card(tenant_id, card_code)
            if card is None:
                raise

    if (
        not reassign
        and owner_id is not None
        and card.sold_to_user_id is not None
        and card.sold_to_user_id != owner_id
    ):
        raise CardOwnershipConflictError(card_code, card.sold_to_user_id)

    if not _apply_ownership(card, owner_id, pin, product_id, order_id, sold_at):
        return UPSERT_UNCHANGED

    commit_with_retry()
    return UPSERT_UPDATED


def mark_as_used(tenant_id: int, owner_ids: list[str], card_ids: list[int]) -> int:
    """Flag SOLD cards owned by the caller's identity set as USED."""
    if not owner_ids or not card_ids:
        return 0

    def _op():
        updated = (
            db.session.query(Card)
            .filter(
                Card.tenant_id == tenant_id,
                Card.id.in_(card_ids),
                Card.sold_to_user_id.in_(owner_ids),
                Card.status == CARD_STATUS_SOLD,
            )
            .update({Card.status: CARD_STATUS_USED, Card.updated_at: utcnow()}, synchronize_session=False)
        )
        db.session.commit()
        return updated

    return run_with_retry(_op)


def mark_expired_cards(tenant_id: int) -> int:
    """Flag unsold stock whose expiry_date has passed."""
    def _op():
        now = utcnow()
        updated = (
            db.session.query(Card)
            .filter(
                Card.tenant_id == tenant_id,
                Card.status == CARD_STATUS_AVAILABLE,
                Card.expiry_date.isnot(None),
                Card.expiry_date <= now,
            )
            .update({Card.status: CARD_STATUS_EXPIRED, Card.updated_at: now}, synchronize_session=False)
        )
        db.session.commit()
        return updated

    expired = run_with_retry(_op)
    if expired:
        logger.info("Marked %s card(s) expired for tenant %s", expired, tenant_id)
    return expired


# =============================================================================
# STOCK IMPORT
# =============================================================================

def import_cards(tenant_id: int, product_id: int, rows) -> ImportReport:
    """
    Load AVAILABLE stock from (code, pin, expiry_date) rows.

    Codes already present for the tenant, blank codes, and duplicates within
    `rows` are skipped.
    """
    product = db.session.query(Product).filter_by(id=product_id, tenant_id=tenant_id).first()
    if not product:
        raise ProductNotFoundError(f"Product {product_id} not found")

    report = ImportReport()
    pending: dict[str, tuple] = {}
    for code, pin, expiry_date in rows:
        code = (code or "").strip()
        if not code or code in pending:
            report.skipped += 1
            continue
        pending[code] = (pin or None, expiry_date)

    if pending:
        existing = {
            row.card_code
            for row in db.session.query(Card.card_code)
            .filter(Card.tenant_id == tenant_id, Card.card_code.in_(list(pending)))
            .all()
        }
        for code, (pin, expiry_date) in pending.items():
            if code in existing:
                report.skipped += 1
                continue
            db.session.add(Card(
                tenant_id=tenant_id,
                product_id=product_id,
                card_code=code,
                card_pin=pin,
                status=CARD_STATUS_AVAILABLE,
                expiry_date=expiry_date,
            ))
            report.imported += 1
        db.session.commit()

    logger.info(
        "Imported %s card(s) for product %s (skipped %s)", report.imported, product_id, report.skipped
    )
    return report
