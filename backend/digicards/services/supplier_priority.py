# Overview: Builds the ranked supplier list sent with each supplier purchase.

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..extensions import db
from ..models import Product, ProductSupplier, Supplier


logger = logging.getLogger(__name__)


SOURCE_LINKED = "linked"
SOURCE_TENANT_ACTIVE = "tenant_active"
SOURCE_CODE_PREFIX = "code_prefix"

# Supplier name fragment -> provider code (first match wins)
PROVIDER_NAME_HINTS = (
    ("WUPEX", "WUPEX"),
    ("ONECARD", "ONECARD"),
    ("1CARD", "ONECARD"),
    ("BAMBOO", "BAMBOO"),
    ("LIKE", "LIKE_CARD"),
    ("BITAQATY", "BITAQATY"),
    ("MINTAR", "MINTAR"),
)

# Product code prefix -> provider code, last-resort fallback
PROVIDER_CODE_PREFIXES = (
    ("WUPEX", "WUPEX"),
    ("ONECARD", "ONECARD"),
    ("1CARD", "ONECARD"),
    ("LIKE", "LIKE_CARD"),
    ("BAMBOO", "BAMBOO"),
    ("BITAQATY", "BITAQATY"),
)


@dataclass(frozen=True)
class SupplierPriorityEntry:
    name: str
    product_code: str
    price_exceed: bool

    def to_wire(self) -> dict:
        return {
            "name": self.name,
            "product_code": self.product_code,
            "priceExceed": self.price_exceed,
        }


def infer_provider(supplier: Supplier) -> str | None:
    """Provider code for a supplier: explicit field, else a known name fragment."""
    if supplier.provider and supplier.provider.strip():
        return supplier.provider.strip().upper()
    name = (supplier.name or "").upper()
    for fragment, provider in PROVIDER_NAME_HINTS:
        if fragment in name:
            return provider
    return None


def infer_provider_from_code(product_code: str | None) -> str | None:
    code = (product_code or "").upper()
    for prefix, provider in PROVIDER_CODE_PREFIXES:
        if code.startswith(prefix):
            return provider
    return None


def _linked_entries(product: Product, product_code: str, price_exceed: bool) -> list[SupplierPriorityEntry]:
    links = (
        db.session.query(ProductSupplier)
        .join(Supplier, Supplier.id == ProductSupplier.supplier_id)
        .filter(ProductSupplier.product_id == product.id)
        .order_by(
            ProductSupplier.is_primary.desc(),
            ProductSupplier.created_at.asc(),
            ProductSupplier.id.asc(),
        )
        .all()
    )
    entries = []
    for link in links:
        provider = infer_provider(link.supplier)
        if not provider:
            continue
        entries.append(SupplierPriorityEntry(
            name=provider,
            product_code=link.supplier_product_code or product_code,
            price_exceed=price_exceed,
        ))
    return entries


def _tenant_entries(tenant_id: int, product_code: str, price_exceed: bool) -> list[SupplierPriorityEntry]:
    suppliers = (
        db.session.query(Supplier)
        .filter_by(tenant_id=tenant_id, is_active=True)
        .order_by(Supplier.created_at.asc(), Supplier.id.asc())
        .all()
    )
    entries = []
    for supplier in suppliers:
        provider = infer_provider(supplier)
        if provider:
            entries.append(SupplierPriorityEntry(provider, product_code, price_exceed))
    return entries


def resolve_supplier_priority(product: Product, product_code: str) -> tuple[list[SupplierPriorityEntry], str | None]:
    """
    Ranked supplier list for one product.

    Order of resolution:
    1. Suppliers linked to the product (primary first, then oldest link)
    2. All active suppliers of the product's tenant
    3. A provider inferred from the product code prefix

    Returns:
        (entries, source). entries is empty and source None when nothing
        resolves; the caller records that as NoResolvableSupplierError.
    """
    price_exceed = product.effective_price_exceed

    entries = _linked_entries(product, product_code, price_exceed)
    if entries:
        return entries, SOURCE_LINKED

    logger.warning(
        "No suppliers linked to product %s (%s); falling back to all active suppliers",
        product.id, product_code,
    )
    entries = _tenant_entries(product.tenant_id, product_code, price_exceed)
    if entries:
        return entries, SOURCE_TENANT_ACTIVE

    provider = infer_provider_from_code(product_code)
    if provider:
        logger.info("Inferred supplier %s from product code %s", provider, product_code)
        return [SupplierPriorityEntry(provider, product_code, price_exceed)], SOURCE_CODE_PREFIX

    logger.error("Could not resolve any supplier for product %s (%s)", product.id, product_code)
    return [], None
