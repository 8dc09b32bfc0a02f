# Overview: Per-order fulfillment pipeline; local stock, supplier fallback, persistence, delivery.

"""
Fulfillment Orchestrator

WHY: A paid digital order must end with codes in the customer's hands, even
when some items can't be fulfilled right now. Failures are collected per
item and returned as data; this never raises because one item failed.

PER-ITEM STATE PATH (recorded in ItemOutcome.path):
    TRY_LOCAL -> DONE                                   (local stock covered it)
    TRY_LOCAL -> TRY_SUPPLIER -> PERSIST -> DONE        (bought from supplier hub)
    TRY_LOCAL -> TRY_SUPPLIER -> RECORD_ERROR -> DONE   (supplier failed)
    TRY_LOCAL -> TRY_SUPPLIER -> PERSIST -> RECORD_ERROR -> DONE
                                      (some supplier codes belong to another customer)
    RECORD_ERROR -> DONE                                (quantity is not positive)

Any other domain or database error inside one item rolls back that item's
work and is recorded on it; the remaining items still run.

AFTER ALL ITEMS:
- zero codes: DeliveryResult with a bilingual error message, no exception
- otherwise: exports and notifications, best-effort, after persistence

OWNER RESOLUTION:
Email within the order's tenant, then email in any tenant, then the
caller-supplied user id. A resolved owner forces the "inventory" option.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import Card, CardOrder, Order, OrderItem, Product, Tenant
from ..models.orders import (
    CARD_ORDER_PAYMENT_COMPLETED,
    CARD_ORDER_STATUS_DELIVERED,
    ORDER_STATUS_DELIVERED,
    PAYMENT_STATUS_SUCCEEDED,
    WALLET_STATE_PENDING,
)
from ..errors import (
    CardOwnershipConflictError,
    DigicardsError,
    InsufficientStockError,
    InsufficientWalletBalanceError,
    MissingProductCodeError,
    NoResolvableSupplierError,
    OrderNotFoundError,
    SupplierConfigurationError,
    SupplierError,
    WalletNotFoundError,
)
from . import card_inventory_service, delivery_exports, supplier_gateway
from .concurrency import run_with_retry
from .delivery_exports import ExportRow
from .identity_service import resolve_customer_user_id
from .notification_service import NotificationCard, Notifier
from .supplier_client import SupplierHubClient


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

PATH_TRY_LOCAL = "TRY_LOCAL"
PATH_TRY_SUPPLIER = "TRY_SUPPLIER"
PATH_PERSIST = "PERSIST"
PATH_RECORD_ERROR = "RECORD_ERROR"
PATH_DONE = "DONE"

SOURCE_LOCAL = "local"
SOURCE_SUPPLIER = "supplier"

OPTION_INVENTORY = "inventory"
OPTION_TEXT = "text"
OPTION_EXCEL = "excel"
OPTION_PDF = "pdf"
OPTION_EMAIL = "email"
OPTION_WHATSAPP = "whatsapp"

EXPORT_OPTIONS = (OPTION_TEXT, OPTION_EXCEL, OPTION_PDF)

ERROR_NO_CODES = "No serial numbers were retrieved. "
ERROR_NO_CODES_AR = "لم يتم استرجاع الأرقام التسلسلية. "
ERROR_MISSING_KEY = "SUPPLIER_HUB_API_KEY is not configured. "
ERROR_MISSING_KEY_AR = "SUPPLIER_HUB_API_KEY غير مضبوط. "
ERROR_MISSING_CODE = "Products do not have productCode set. "
ERROR_MISSING_CODE_AR = "المنتجات لا تحتوي على productCode. "
ERROR_FOOTER = "Please check product configuration and API settings."
ERROR_FOOTER_AR = "يرجى التحقق من إعدادات المنتج وواجهة برمجة التطبيقات."


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class DeliveredCard:
    product_id: int
    product_name: str
    serial_number: str
    pin: str | None = None


@dataclass
class ItemOutcome:
    order_item_id: int
    product_id: int
    product_name: str
    quantity: int
    source: str | None = None
    cards: list[DeliveredCard] = field(default_factory=list)
    error: str | None = None
    path: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return bool(self.cards)


@dataclass
class DeliveryResult:
    order_id: int
    serial_numbers: list[str] = field(default_factory=list)
    serial_numbers_by_product: dict[str, list[dict]] = field(default_factory=dict)
    delivery_options: list[str] = field(default_factory=list)
    files: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    error_ar: str | None = None
    item_errors: list[str] = field(default_factory=list)
    pending_reveal: bool = False
    items: list[ItemOutcome] = field(default_factory=list)

    @property
    def code_count(self) -> int:
        return sum(len(entries) for entries in self.serial_numbers_by_product.values())

    def to_dict(self) -> dict:
        """Snapshot stored in orders.delivery_files (camelCase, as clients read it)."""
        data = {
            "serialNumbers": list(self.serial_numbers),
            "serialNumbersByProduct": {k: list(v) for k, v in self.serial_numbers_by_product.items()},
            "deliveryOptions": list(self.delivery_options),
            "textFileUrl": self.files.get(OPTION_TEXT),
            "excelFileUrl": self.files.get(OPTION_EXCEL),
            "pdfFileUrl": self.files.get(OPTION_PDF),
            "requiresReveal": self.pending_reveal,
            "isPendingWallet": self.pending_reveal,
        }
        if self.error:
            data["error"] = self.error
            data["errorAr"] = self.error_ar
        if self.item_errors:
            data["itemErrors"] = list(self.item_errors)
        return data


# =============================================================================
# HELPERS
# =============================================================================

def resolve_delivery_options(requested, owner_id: str | None) -> list[str]:
    options = [opt for opt in (requested or []) if opt]
    if not options:
        options = [OPTION_INVENTORY, OPTION_TEXT] if owner_id else [OPTION_TEXT]
    if owner_id and OPTION_INVENTORY not in options:
        options.append(OPTION_INVENTORY)
    # De-duplicate, keep order
    return list(dict.fromkeys(options))


def ensure_fulfillment_record(order: Order, owner_id: str | None) -> CardOrder:
    """The card_orders row cards of this storefront order point at."""
    record = db.session.query(CardOrder).filter_by(storefront_order_id=order.id).first()
    if record:
        if owner_id and record.user_id != owner_id:
            record.user_id = owner_id
            db.session.commit()
        return record

    record = CardOrder(
        tenant_id=order.tenant_id,
        order_number=order.order_number,
        user_id=owner_id,
        storefront_order_id=order.id,
        total_with_tax_cents=order.total_amount_cents,
        status=CARD_ORDER_STATUS_DELIVERED,
        payment_status=CARD_ORDER_PAYMENT_COMPLETED,
    )
    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError:
        # Another worker created it first
        db.session.rollback()
        record = db.session.query(CardOrder).filter_by(storefront_order_id=order.id).one()
    return record


def _product_label(product: Product) -> str:
    return (product.product_code or "").strip() or (product.sku or "").strip() or product.name


def _try_local(item: OrderItem, outcome: ItemOutcome, card_order: CardOrder, owner_id: str | None) -> bool:
    outcome.path.append(PATH_TRY_LOCAL)
    try:
        card_ids = card_inventory_service.reserve_cards(item.product_id, item.quantity, card_order.id)
    except InsufficientStockError as exc:
        logger.info("Local stock for %s: %s; falling back to supplier", item.product_name, exc)
        return False

    try:
        card_inventory_service.mark_as_sold(card_ids, owner_id, card_order.id)
    except (DigicardsError, SQLAlchemyError):
        db.session.rollback()
        card_inventory_service.release_cards(card_ids)
        raise
    cards = db.session.query(Card).filter(Card.id.in_(card_ids)).order_by(Card.id.asc()).all()
    outcome.source = SOURCE_LOCAL
    outcome.cards = [
        DeliveredCard(item.product_id, item.product_name, card.card_code, card.card_pin) for card in cards
    ]
    logger.info("Fulfilled %s card(s) from local stock for %s", len(cards), item.product_name)
    return True


def _persist_pairs(
    tenant_id: int,
    item: OrderItem,
    pairs,
    owner_id: str | None,
    card_order: CardOrder,
) -> tuple[list[DeliveredCard], list[str]]:
    """Record supplier codes; codes owned by another customer are withheld."""
    delivered = []
    conflicts = []
    for pair in pairs:
        try:
            card_inventory_service.upsert_ownership(
                tenant_id,
                pair.code,
                owner_id,
                pair.pin,
                product_id=item.product_id,
                order_id=card_order.id,
                reassign=False,
            )
        except CardOwnershipConflictError as exc:
            db.session.rollback()
            logger.error(
                "Supplier returned code %s for order item %s but it belongs to user %s; not delivered",
                exc.card_code, item.id, exc.current_owner_id,
            )
            conflicts.append(exc.card_code)
            continue
        except (SQLAlchemyError, DigicardsError):
            # The code is still delivered; inventory healing re-links it from the order snapshot
            db.session.rollback()
            logger.exception("Failed to record card %s for order item %s", pair.code, item.id)
        delivered.append(DeliveredCard(item.product_id, item.product_name, pair.serial_number, pair.pin))
    return delivered, conflicts


def _try_supplier(
    tenant_id: int,
    item: OrderItem,
    outcome: ItemOutcome,
    card_order: CardOrder,
    owner_id: str | None,
    customer: supplier_gateway.CustomerInfo,
    client: SupplierHubClient,
) -> None:
    outcome.path.append(PATH_TRY_SUPPLIER)
    product = db.session.get(Product, item.product_id)
    if product is None:
        outcome.error = f'Product "{item.product_name}" (ID: {item.product_id}) not found'
        outcome.path.append(PATH_RECORD_ERROR)
        return

    label = _product_label(product)
    try:
        pairs = supplier_gateway.purchase_cards(
            product,
            item.quantity,
            unit_price_cents=item.price_cents or product.price_cents or 0,
            currency=product.currency or "SAR",
            customer=customer,
            client=client,
            product_name=item.product_name,
        )
    except (MissingProductCodeError, NoResolvableSupplierError, SupplierConfigurationError) as exc:
        outcome.error = str(exc)
    except SupplierError as exc:
        outcome.error = f"Supplier API call failed for {label}: {exc}"
    else:
        if not pairs:
            outcome.error = f"Supplier API returned 0 serial numbers for product {label}"
        else:
            outcome.path.append(PATH_PERSIST)
            outcome.source = SOURCE_SUPPLIER
            outcome.cards, conflicts = _persist_pairs(tenant_id, item, pairs, owner_id, card_order)
            logger.info("Fulfilled %s card(s) from supplier for %s", len(outcome.cards), item.product_name)
            if not conflicts:
                return
            outcome.error = (
                f"Supplier returned card code(s) already owned by another customer for {label}: "
                f"{', '.join(conflicts)}"
            )

    outcome.path.append(PATH_RECORD_ERROR)
    logger.warning("Order item %s (%s) failed: %s", item.id, item.product_name, outcome.error)


def _fulfill_item(
    tenant_id: int,
    item: OrderItem,
    outcome: ItemOutcome,
    card_order: CardOrder,
    owner_id: str | None,
    customer: supplier_gateway.CustomerInfo,
    client: SupplierHubClient,
) -> None:
    if not item.quantity or item.quantity <= 0:
        outcome.error = f"Invalid quantity {item.quantity} for {item.product_name}"
        outcome.path.append(PATH_RECORD_ERROR)
        logger.warning("Order item %s skipped: %s", item.id, outcome.error)
        return
    if not _try_local(item, outcome, card_order, owner_id):
        _try_supplier(tenant_id, item, outcome, card_order, owner_id, customer, client)


def _zero_codes_messages(errors: list[str], has_api_key: bool, missing_code: bool) -> tuple[str, str]:
    message = ERROR_NO_CODES
    message_ar = ERROR_NO_CODES_AR
    if not has_api_key:
        message += ERROR_MISSING_KEY
        message_ar += ERROR_MISSING_KEY_AR
    if missing_code and not errors:
        message += ERROR_MISSING_CODE
        message_ar += ERROR_MISSING_CODE_AR
    if errors:
        message += f"Issues: {errors[0]}. "
        message_ar += f"مشاكل: {errors[0]}. "
    return message + ERROR_FOOTER, message_ar + ERROR_FOOTER_AR


# =============================================================================
# PIPELINE
# =============================================================================

def process_digital_delivery(
    order_id: int,
    *,
    user_id: str | None = None,
    delivery_options=None,
    customer_email: str | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    order_number: str | None = None,
    skip_notifications: bool = False,
    supplier_client: SupplierHubClient | None = None,
    notifier: Notifier | None = None,
) -> DeliveryResult:
    """
    Fulfill every line item of an order and deliver the codes.

    Args:
        order_id: Storefront order id
        user_id: Caller-supplied customer id (may be an external auth id)
        delivery_options: Any of inventory, text, excel, pdf, email, whatsapp
        skip_notifications: Set while the order awaits wallet deduction; no
            files or messages are produced and the result is marked pending

    Returns:
        DeliveryResult. error/error_ar are set when no code was obtained.

    Raises:
        OrderNotFoundError: Unknown order id
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found")

    tenant_id = order.tenant_id
    email = customer_email or order.customer_email
    number = order_number or order.order_number
    caller_id = user_id or order.user_id or order.legacy_user_id

    owner_id = resolve_customer_user_id(tenant_id, email, caller_id)
    options = resolve_delivery_options(delivery_options, owner_id)
    inventory_owner = owner_id if OPTION_INVENTORY in options else None
    logger.info("Delivering order %s (owner %s, options %s)", number, owner_id or "NONE", options)

    card_order = ensure_fulfillment_record(order, inventory_owner)
    customer = supplier_gateway.CustomerInfo(
        name=customer_name or order.customer_name,
        email=email,
        phone=customer_phone or order.customer_phone,
        order_number=number,
    )

    owns_client = supplier_client is None
    client = supplier_client or SupplierHubClient.from_config()
    items = list(order.items)
    result = DeliveryResult(order_id=order.id, delivery_options=options, pending_reveal=skip_notifications)
    try:
        for item in items:
            outcome = ItemOutcome(item.id, item.product_id, item.product_name, item.quantity)
            try:
                _fulfill_item(tenant_id, item, outcome, card_order, inventory_owner, customer, client)
            except (DigicardsError, SQLAlchemyError) as exc:
                db.session.rollback()
                logger.exception("Order item %s (%s) aborted", outcome.order_item_id, outcome.product_name)
                outcome.error = f"Fulfillment failed for {outcome.product_name}: {exc}"
                outcome.path.append(PATH_RECORD_ERROR)
            outcome.path.append(PATH_DONE)
            result.items.append(outcome)
    finally:
        if owns_client:
            client.close()

    for outcome in result.items:
        if outcome.error:
            result.item_errors.append(outcome.error)
        for card in outcome.cards:
            result.serial_numbers.append(card.serial_number)
            result.serial_numbers_by_product.setdefault(card.product_name, []).append(
                {"serialNumber": card.serial_number, "pin": card.pin}
            )

    if result.code_count == 0:
        missing_code = any(
            isinstance(o.error, str) and "does not have a productCode" in o.error for o in result.items
        )
        result.error, result.error_ar = _zero_codes_messages(
            result.item_errors, client.is_configured, missing_code or not items
        )
        logger.error("Order %s delivered no codes. Errors: %s", number, result.item_errors)
        return result

    if result.item_errors:
        logger.warning("Order %s partially fulfilled. Errors: %s", number, result.item_errors)

    if skip_notifications:
        logger.info("Order %s awaits wallet deduction; delivery side effects deferred", number)
        return result

    delivered = [card for outcome in result.items for card in outcome.cards]
    export_formats = [opt for opt in options if opt in EXPORT_OPTIONS]
    if export_formats:
        rows = [ExportRow(c.product_name, c.serial_number, c.pin) for c in delivered]
        result.files = delivery_exports.generate_exports(tenant_id, order.id, rows, export_formats)

    if OPTION_EMAIL in options or OPTION_WHATSAPP in options:
        notifier = notifier or Notifier.from_config()
        tenant = db.session.get(Tenant, tenant_id)
        cards = [NotificationCard(c.product_name, c.serial_number, c.pin) for c in delivered]
        if OPTION_EMAIL in options:
            notifier.send_email(tenant=tenant, to_email=email, order_number=number, cards=cards)
        if OPTION_WHATSAPP in options:
            notifier.send_whatsapp(tenant=tenant, phone=customer.phone, order_number=number, cards=cards)

    logger.info("Order %s delivered %s code(s)", number, result.code_count)
    return result


def _stored_options(order: Order) -> list[str]:
    for blob in (order.delivery_files, order.billing_metadata):
        options = (blob or {}).get("deliveryOptions")
        if isinstance(options, list) and options:
            return list(options)
    return [OPTION_TEXT, OPTION_EXCEL]


def fulfill_paid_order(
    order_id: int,
    *,
    supplier_client: SupplierHubClient | None = None,
    notifier: Notifier | None = None,
) -> DeliveryResult | None:
    """
    Run delivery for an order whose payment succeeded or is wallet-pending.

    - Orders neither paid nor wallet-pending are skipped (None).
    - Orders that already hold delivered codes are skipped (None).
    - The result is snapshotted into orders.delivery_files.
    - Wallet-pending orders are auto-revealed when the balance allows;
      otherwise they stay blurred.
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found")

    pending = order.is_wallet_pending
    if order.payment_status != PAYMENT_STATUS_SUCCEEDED and not pending:
        logger.warning(
            "Skipping delivery: order %s not paid and not wallet-pending (payment %s)",
            order.order_number, order.payment_status,
        )
        return None

    if (order.delivery_files or {}).get("serialNumbers"):
        logger.info("Order %s already delivered; skipping", order.order_number)
        return None

    options = _stored_options(order)
    if order.customer_email and OPTION_INVENTORY not in options:
        options.append(OPTION_INVENTORY)

    result = process_digital_delivery(
        order.id,
        delivery_options=options,
        skip_notifications=pending,
        supplier_client=supplier_client,
        notifier=notifier,
    )

    def _snapshot():
        fresh = db.session.get(Order, order_id)
        snapshot = result.to_dict()
        snapshot["_walletDeductionPending"] = pending
        fresh.delivery_files = snapshot
        if pending:
            fresh.set_wallet_state(WALLET_STATE_PENDING)
        if result.code_count:
            fresh.status = ORDER_STATUS_DELIVERED
        db.session.commit()

    run_with_retry(_snapshot)

    if pending and result.code_count:
        order = db.session.get(Order, order_id)
        owner_id = resolve_customer_user_id(
            order.tenant_id, order.customer_email, order.user_id or order.legacy_user_id
        )
        if owner_id:
            # Imported here: reveal_service depends on the models this module also loads
            from .reveal_service import reveal
            try:
                reveal(
                    order.tenant_id,
                    owner_id,
                    order_id=order.id,
                    email=order.customer_email,
                    notifier=notifier,
                )
                result.pending_reveal = False
            except (InsufficientWalletBalanceError, WalletNotFoundError) as exc:
                logger.warning("Auto-deduction for order %s failed: %s; codes stay blurred", order.order_number, exc)

    return result


def get_delivery_files(order_id: int) -> list[dict]:
    """Export files generated for an order, newest first."""
    order = db.session.get(Order, order_id)
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found")
    return delivery_exports.list_exports(order.tenant_id, order.id)
