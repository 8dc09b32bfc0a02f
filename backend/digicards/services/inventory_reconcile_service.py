# Overview: Rebuilds a customer's card inventory from historical order payloads on read.

"""
Inventory Reconciler ("self-healing")

WHY: Codes have been delivered through several generations of order
storage. Some never got a cards row, some were written under an external
auth id, some were left without an owner. Reading the inventory is the one
moment we know who the customer is, so healing runs there.

SOURCES SCANNED:
- storefront orders (by customer email, user_id, or billing_metadata._userId)
  whose delivery_files blob embeds serial numbers
- card_orders owned by the caller (legacy/marketplace purchases)

INVARIANTS:
- Idempotent: known codes are looked up before any insert; a second run over
  unchanged data writes nothing.
- Never creates a second row for (tenant_id, card_code).
- Only orphaned rows (no owner) or rows owned by an id with no local user are
  reassigned. A row owned by another local customer is never taken.
- Best-effort: a healing failure is logged and the inventory is still read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Card, CardOrder, Order, User
from ..models.cards import CARD_STATUS_EXPIRED, CARD_STATUS_INVALID, CARD_STATUS_USED
from ..models.orders import (
    CARD_ORDER_PAYMENT_PENDING,
    CARD_ORDER_STATUS_DELIVERED,
    CARD_ORDER_STATUS_PAID,
    FULFILLED_ORDER_STATUSES,
)
from ..errors import DigicardsError
from digicards.time_utils import is_past, to_utc_z
from . import card_inventory_service
from .card_inventory_service import UPSERT_CREATED, UPSERT_UNCHANGED
from .identity_service import Identity, resolve_identity


logger = logging.getLogger(__name__)

# Most recent orders scanned per read
ORDER_SCAN_LIMIT = 50
# Window searched for legacy rows that only carry billing_metadata._userId
LEGACY_SCAN_WINDOW = 200

MASKED_SERIAL = "********"
MASKED_PIN = "****"
STATUS_PENDING_PAYMENT = "PENDING_PAYMENT"

_SERIAL_KEYS = ("serialNumber", "cardCode", "serial", "value")
_PIN_KEYS = ("pin", "cardPin", "secret")
_LIST_KEYS = ("serialNumbers", "cards", "items")

__all__ = [
    "HealReport",
    "Identity",
    "resolve_identity",
    "heal_inventory",
    "get_customer_inventory",
]


@dataclass
class HealReport:
    created: int = 0
    reassigned: int = 0
    scanned_orders: int = 0
    scanned_card_orders: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.reassigned)


@dataclass
class EmbeddedCode:
    product_name: str | None
    serial_number: str
    pin: str | None

    @property
    def code(self) -> str:
        return self.serial_number or (self.pin or "")


# =============================================================================
# PAYLOAD EXTRACTION (pure)
# =============================================================================

def _first_text(entry: dict, keys) -> str | None:
    for key in keys:
        value = entry.get(key)
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _read_entry(entry, product_name: str | None) -> EmbeddedCode | None:
    if isinstance(entry, (str, int)) and not isinstance(entry, bool):
        serial = str(entry).strip()
        return EmbeddedCode(product_name, serial, None) if serial else None
    if not isinstance(entry, dict):
        return None
    serial = _first_text(entry, _SERIAL_KEYS) or ""
    pin = _first_text(entry, _PIN_KEYS)
    if not serial and not pin:
        return None
    name = product_name or _first_text(entry, ("productName", "product_name", "name"))
    return EmbeddedCode(name, serial, pin)


def extract_embedded_codes(delivery_files) -> list[EmbeddedCode]:
    """
    All codes embedded in a delivery_files blob, first occurrence wins.

    serialNumbersByProduct is read first since it carries the product name.
    """
    if not isinstance(delivery_files, dict):
        return []

    found: list[EmbeddedCode] = []
    by_product = delivery_files.get("serialNumbersByProduct")
    if isinstance(by_product, dict):
        for product_name, entries in by_product.items():
            if not isinstance(entries, list):
                continue
            for entry in entries:
                code = _read_entry(entry, product_name)
                if code:
                    found.append(code)

    for key in _LIST_KEYS:
        entries = delivery_files.get(key)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            code = _read_entry(entry, None)
            if code:
                found.append(code)

    unique: dict[str, EmbeddedCode] = {}
    for code in found:
        unique.setdefault(code.code, code)
    return list(unique.values())


def match_order_item(items, product_name: str | None):
    """Exact name, then case-insensitive, then substring either way, then the first item."""
    items = list(items)
    if not items:
        return None
    if product_name:
        for item in items:
            if item.product_name == product_name:
                return item
        wanted = product_name.strip().lower()
        for item in items:
            if (item.product_name or "").strip().lower() == wanted:
                return item
        for item in items:
            name = (item.product_name or "").strip().lower()
            if name and (wanted in name or name in wanted):
                return item
    return items[0]


def map_card_status(card: Card) -> str:
    if card.status in (CARD_STATUS_INVALID, CARD_STATUS_USED):
        return CARD_STATUS_USED
    if card.status == CARD_STATUS_EXPIRED or is_past(card.expiry_date):
        return CARD_STATUS_EXPIRED
    return "SOLD"


# =============================================================================
# HEALING
# =============================================================================

def _is_foreign_owner(owner_id: str) -> bool:
    return db.session.get(User, owner_id) is None


def _may_take(card: Card, identity: Identity) -> bool:
    owner = card.sold_to_user_id
    if owner is None:
        return True
    if owner in identity.user_ids:
        return False
    return _is_foreign_owner(owner)


def _candidate_orders(tenant_id: int, identity: Identity) -> list[Order]:
    base = (
        db.session.query(Order)
        .filter(
            Order.tenant_id == tenant_id,
            Order.delivery_files.isnot(None),
            Order.status.in_(FULFILLED_ORDER_STATUSES),
        )
        .order_by(Order.created_at.desc(), Order.id.desc())
    )

    conditions = [Order.user_id.in_(identity.user_ids)]
    if identity.email:
        conditions.append(func.lower(Order.customer_email) == identity.email)
    orders = base.filter(or_(*conditions)).limit(ORDER_SCAN_LIMIT).all()

    # Rows that only remember the buyer in billing_metadata._userId
    seen = {o.id for o in orders}
    for order in base.filter(Order.billing_metadata.isnot(None)).limit(LEGACY_SCAN_WINDOW):
        if order.id not in seen and order.legacy_user_id in identity.user_ids:
            orders.append(order)
            seen.add(order.id)

    orders.sort(key=lambda o: (o.created_at, o.id), reverse=True)
    return orders[:ORDER_SCAN_LIMIT]


def _heal_order(order: Order, identity: Identity, known_codes: set[str], report: HealReport) -> None:
    owner_id = identity.effective_user_id
    record = db.session.query(CardOrder).filter_by(storefront_order_id=order.id).first()
    record_id = record.id if record else None

    for embedded in extract_embedded_codes(order.delivery_files):
        code = embedded.code
        if code in known_codes:
            continue

        card = db.session.query(Card).filter_by(tenant_id=order.tenant_id, card_code=code).first()
        product_id = None
        if card is None:
            item = match_order_item(order.items, embedded.product_name)
            if item is None:
                logger.warning("Order %s embeds code with no matching line item; skipped", order.order_number)
                continue
            product_id = item.product_id
        elif not _may_take(card, identity):
            continue

        outcome = card_inventory_service.upsert_ownership(
            order.tenant_id,
            code,
            owner_id,
            embedded.pin,
            product_id=product_id,
            order_id=record_id,
            sold_at=order.paid_at or order.created_at,
        )
        known_codes.add(code)
        if outcome == UPSERT_CREATED:
            report.created += 1
        elif outcome != UPSERT_UNCHANGED:
            report.reassigned += 1


def _heal_card_order(card_order: CardOrder, identity: Identity, report: HealReport) -> None:
    for card in list(card_order.cards):
        if card.sold_to_user_id in identity.user_ids or not _may_take(card, identity):
            continue
        outcome = card_inventory_service.upsert_ownership(
            card.tenant_id, card.card_code, identity.effective_user_id
        )
        if outcome != UPSERT_UNCHANGED:
            report.reassigned += 1


def _heal(tenant_id: int, identity: Identity) -> HealReport:
    report = HealReport()
    if not identity.user_ids or not identity.effective_user_id:
        return report

    known_codes = {
        row.card_code
        for row in db.session.query(Card.card_code)
        .filter(Card.tenant_id == tenant_id, Card.sold_to_user_id.in_(identity.user_ids))
        .all()
    }

    for order in _candidate_orders(tenant_id, identity):
        report.scanned_orders += 1
        _heal_order(order, identity, known_codes, report)

    card_orders = (
        db.session.query(CardOrder)
        .filter(
            CardOrder.tenant_id == tenant_id,
            CardOrder.user_id.in_(identity.user_ids),
            CardOrder.status.in_([CARD_ORDER_STATUS_DELIVERED, CARD_ORDER_STATUS_PAID]),
        )
        .order_by(CardOrder.created_at.desc(), CardOrder.id.desc())
        .all()
    )
    for card_order in card_orders:
        report.scanned_card_orders += 1
        _heal_card_order(card_order, identity, report)

    if report.changed:
        logger.info(
            "Healed inventory for %s: %s created, %s reassigned",
            identity.effective_user_id, report.created, report.reassigned,
        )
    return report


def heal_inventory(tenant_id: int, user_id: str | None, email: str | None = None) -> HealReport:
    """Link historical codes to the caller. Safe to run on every read."""
    return _heal(tenant_id, resolve_identity(tenant_id, user_id, email))


# =============================================================================
# READ
# =============================================================================

def _is_pending_reveal(card: Card) -> bool:
    card_order = card.order
    if card_order is None:
        return False
    storefront = card_order.storefront_order
    if storefront is not None:
        return storefront.is_wallet_pending or storefront.requires_reveal
    return card_order.payment_status == CARD_ORDER_PAYMENT_PENDING


def _card_dto(card: Card) -> dict:
    pending = _is_pending_reveal(card)
    card_order = card.order
    storefront = card_order.storefront_order if card_order else None
    product = card.product

    if pending:
        serial = MASKED_SERIAL
        pin = MASKED_PIN if card.card_pin else None
        status = STATUS_PENDING_PAYMENT
    else:
        serial = card.card_code
        pin = card.card_pin
        status = map_card_status(card)

    return {
        "id": card.id,
        "serialNumber": serial,
        "pin": pin,
        "productName": product.name if product else None,
        "productNameAr": product.name_ar if product else None,
        "orderNumber": card_order.order_number if card_order else None,
        "purchasedAt": to_utc_z(card.sold_at),
        "status": status,
        "requiresReveal": pending,
        "orderId": storefront.id if storefront else (card_order.id if card_order else None),
    }


def get_customer_inventory(tenant_id: int, user_id: str | None, email: str | None = None) -> list[dict]:
    """
    The caller's cards, newest first, after healing.

    Codes on orders still awaiting wallet deduction are masked.
    """
    identity = resolve_identity(tenant_id, user_id, email)
    if not identity.user_ids:
        return []

    try:
        _heal(tenant_id, identity)
    except (SQLAlchemyError, DigicardsError):
        db.session.rollback()
        logger.exception("Inventory healing failed for %s; returning stored cards", identity.effective_user_id)

    cards = (
        db.session.query(Card)
        .filter(Card.tenant_id == tenant_id, Card.sold_to_user_id.in_(identity.user_ids))
        .order_by(Card.sold_at.desc(), Card.id.desc())
        .all()
    )
    return [_card_dto(card) for card in cards]
