# Overview: Supplier purchase flow; product-code resolution, priority, hub call, and self-heal.

"""
Supplier Gateway

WHY: When local stock cannot cover an item, codes are bought from the
supplier hub, which fans out to the actual providers using the ranked
supplier_priority list we send.

DESIGN:
- Each attempt gets a fresh order_ref (prefix + ms timestamp + random
  suffix) so retries never collide supplier-side.
- Calls to the hub are bounded per tenant by a BoundedSemaphore.
- On a validation rejection the product name is matched against the
  supplier catalog. A better code is saved on the product for the NEXT
  order and noted on the error; the current attempt still fails.
- Failures are raised as SupplierError subclasses; the orchestrator records
  them per item.
"""

from __future__ import annotations

import logging
import random
import threading
from contextlib import contextmanager
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Product, SupplierProduct
from ..errors import (
    MissingProductCodeError,
    NoResolvableSupplierError,
    SupplierError,
    SupplierValidationError,
)
from digicards.time_utils import utc_millis
from .normalizer import DeliverablePair, has_unresolved_deliverables, normalize
from .product_code_matcher import match_product_code
from .supplier_client import SupplierHubClient
from .supplier_priority import SOURCE_LINKED, SupplierPriorityEntry, resolve_supplier_priority


logger = logging.getLogger(__name__)


SLOTS_EXTENSION_KEY = "digicards.supplier_slots"

_tenant_slots_lock = threading.Lock()


@dataclass
class CustomerInfo:
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    order_number: str | None = None


@contextmanager
def tenant_slot(tenant_id: int, limit: int | None = None):
    """
    Hold one of the tenant's concurrent supplier-call slots.

    Slots live on the current app, so each app instance has its own. A
    changed SUPPLIER_MAX_CONCURRENCY_PER_TENANT replaces the tenant's
    semaphore; callers already holding the old one release it normally.
    """
    if limit is None:
        limit = int(current_app.config.get("SUPPLIER_MAX_CONCURRENCY_PER_TENANT", 4))
    limit = max(1, limit)
    with _tenant_slots_lock:
        slots = current_app.extensions.setdefault(SLOTS_EXTENSION_KEY, {})
        entry = slots.get(tenant_id)
        if entry is None or entry[0] != limit:
            entry = slots[tenant_id] = (limit, threading.BoundedSemaphore(limit))
    with entry[1]:
        yield


def load_catalog() -> list[SupplierProduct]:
    return (
        db.session.query(SupplierProduct)
        .filter_by(is_active=True, is_available=True)
        .order_by(SupplierProduct.id.asc())
        .all()
    )


# =============================================================================
# PRODUCT CODE
# =============================================================================

def resolve_product_code(product: Product) -> str:
    """
    Supplier code for a product: product_code, then SKU, then a catalog match
    on the product name (saved on the product for future orders).

    Raises:
        MissingProductCodeError: No code from any source
    """
    code = (product.product_code or "").strip()
    if code:
        return code

    sku = (product.sku or "").strip()
    if sku:
        logger.warning("Product %s has no product code; using SKU %s", product.id, sku)
        return sku

    match = match_product_code(product.name, load_catalog())
    if match:
        product.product_code = match.product_code
        db.session.commit()
        logger.info(
            "Resolved product code %s for product %s from supplier catalog (score %.2f)",
            match.product_code, product.id, match.score,
        )
        return match.product_code

    raise MissingProductCodeError(
        f'Product "{product.name}" (ID: {product.id}) does not have a productCode or SKU set'
    )


def heal_product_code(product: Product, current_code: str) -> str | None:
    """
    Look up a better supplier code for a product whose code was rejected.

    Returns:
        The new code (already saved on the product), or None
    """
    try:
        match = match_product_code(product.name, load_catalog())
    except SQLAlchemyError:
        logger.exception("Product code self-heal lookup failed for product %s", product.id)
        return None

    if not match or match.product_code == current_code:
        return None

    product.product_code = match.product_code
    db.session.commit()
    logger.warning(
        "Self-healed product %s code %s -> %s (score %.2f)",
        product.id, current_code, match.product_code, match.score,
    )
    return match.product_code


# =============================================================================
# PURCHASE
# =============================================================================

def new_order_ref(prefix: str | None = None) -> str:
    if prefix is None:
        prefix = current_app.config.get("SUPPLIER_ORDER_REF_PREFIX", "KAWN-ORDER")
    return f"{prefix}-{utc_millis()}-{random.randrange(1000)}"


def build_order_body(
    *,
    order_ref: str,
    product_code: str,
    product_name: str,
    quantity: int,
    unit_price_cents: int,
    currency: str,
    priority: list[SupplierPriorityEntry],
    customer: CustomerInfo,
) -> dict:
    metadata = {
        "customer_name": customer.name,
        "customer_email": customer.email,
        "notes": f"Order {customer.order_number} - {product_name}",
    }
    if customer.phone:
        metadata["customer_phone"] = customer.phone

    return {
        "order_ref": order_ref,
        "product_code": product_code,
        "quantity": quantity,
        "sell_price": round(unit_price_cents * quantity / 100, 2),
        "currency": currency,
        "supplier_priority": [entry.to_wire() for entry in priority],
        "metadata": metadata,
    }


def _follow_up(client: SupplierHubClient, payload, order_ref: str):
    """Re-read the order when deliverables came back as keys without values."""
    if not isinstance(payload, dict) or not has_unresolved_deliverables(payload):
        return payload

    ref = payload.get("order_ref") or order_ref
    logger.info("Deliverables for %s have keys without values; fetching order details", ref)
    try:
        details = client.get_order(ref)
    except SupplierError as exc:
        logger.warning("Follow-up fetch for %s failed: %s", ref, exc)
        return payload

    if isinstance(details, dict) and details.get("deliverables"):
        return {**payload, "deliverables": details["deliverables"]}
    return payload


def purchase(
    product: Product,
    quantity: int,
    *,
    product_code: str,
    unit_price_cents: int,
    currency: str,
    priority: list[SupplierPriorityEntry],
    customer: CustomerInfo,
    client: SupplierHubClient,
    product_name: str | None = None,
):
    """
    Buy `quantity` codes for a product from the supplier hub.

    Returns:
        Raw supplier payload (with follow-up deliverables merged in)

    Raises:
        NoResolvableSupplierError: priority is empty
        SupplierValidationError: Hub rejected the request (suggested_code set
            when self-heal found a better product code)
        SupplierError: Any other supplier failure
    """
    if not priority:
        raise NoResolvableSupplierError(
            f"No supplier could be resolved for product {product_code} "
            "(No suppliers linked - please configure suppliers)"
        )

    order_ref = new_order_ref()
    body = build_order_body(
        order_ref=order_ref,
        product_code=product_code,
        product_name=product_name or product.name,
        quantity=quantity,
        unit_price_cents=unit_price_cents,
        currency=currency,
        priority=priority,
        customer=customer,
    )

    logger.info(
        "Calling supplier hub for product %s x%s (ref %s, suppliers %s)",
        product_code, quantity, order_ref, [entry.name for entry in priority],
    )
    try:
        with tenant_slot(product.tenant_id):
            payload = client.create_order(body)
            return _follow_up(client, payload, order_ref)
    except SupplierValidationError as exc:
        better = heal_product_code(product, product_code)
        if better:
            exc.suggested_code = better
            exc.args = (f"{exc} (System auto-corrected product code to {better}. Please retry.)",)
        raise


def purchase_cards(
    product: Product,
    quantity: int,
    *,
    unit_price_cents: int,
    currency: str,
    customer: CustomerInfo,
    client: SupplierHubClient,
    product_name: str | None = None,
) -> list[DeliverablePair]:
    """Resolve code and priority, buy from the hub, and normalize the response."""
    product_code = resolve_product_code(product)
    priority, source = resolve_supplier_priority(product, product_code)
    if source and source != SOURCE_LINKED:
        logger.warning("Supplier priority for product %s resolved from %s", product.id, source)

    try:
        payload = purchase(
            product,
            quantity,
            product_code=product_code,
            unit_price_cents=unit_price_cents,
            currency=currency,
            priority=priority,
            customer=customer,
            client=client,
            product_name=product_name,
        )
    except NoResolvableSupplierError:
        raise
    except SupplierError as exc:
        if source != SOURCE_LINKED:
            exc.args = (f"{exc} (No suppliers linked - please configure suppliers)",)
        raise
    return normalize(payload)
