from __future__ import annotations

from ..extensions import db
from digicards.time_utils import to_utc_z


class Brand(db.Model):
    __tablename__ = "brands"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    price_exceed = db.Column(db.Boolean, nullable=False, default=False)


class Category(db.Model):
    __tablename__ = "categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    price_exceed = db.Column(db.Boolean, nullable=False, default=False)


class Product(db.Model):
    """
    Sellable digital product (a card denomination).

    SUPPLIER CODE:
    - product_code is the code the supplier hub knows this product by.
    - sku is the store-assigned code; used as a fallback product code.
    - product_code may be rewritten by the self-heal lookup when the
      supplier rejects the current code.

    PRICE EXCEED:
    The flag sent to suppliers inherits Product > Brand > Category
    (see effective_price_exceed).
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_tenant_name", "tenant_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    name_ar = db.Column(db.String(255), nullable=True)
    sku = db.Column(db.String(64), nullable=True)
    product_code = db.Column(db.String(128), nullable=True)

    price_cents = db.Column(db.Integer, nullable=True)
    currency = db.Column(db.String(8), nullable=False, default="SAR")

    price_exceed = db.Column(db.Boolean, nullable=False, default=False)
    brand_id = db.Column(db.Integer, db.ForeignKey("brands.id"), nullable=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    brand = db.relationship("Brand")
    category = db.relationship("Category")

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} code={self.product_code!r}>"

    @property
    def effective_price_exceed(self) -> bool:
        if self.price_exceed:
            return True
        if self.brand is not None and self.brand.price_exceed:
            return True
        if self.category is not None and self.category.price_exceed:
            return True
        return False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "name_ar": self.name_ar,
            "sku": self.sku,
            "product_code": self.product_code,
            "price_cents": self.price_cents,
            "currency": self.currency,
            "price_exceed": self.effective_price_exceed,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Supplier(db.Model):
    """A fulfillment provider account configured for a tenant."""
    __tablename__ = "suppliers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    # Provider family code understood by the hub (WUPEX, ONECARD, ...)
    provider = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Supplier id={self.id} name={self.name!r} provider={self.provider!r}>"


class ProductSupplier(db.Model):
    """
    Per-product supplier link. Priority order is
    (is_primary DESC, created_at ASC, id ASC).
    """
    __tablename__ = "product_suppliers"
    __table_args__ = (
        db.UniqueConstraint("product_id", "supplier_id", name="uq_product_suppliers_pair"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False, index=True)
    supplier_product_code = db.Column(db.String(128), nullable=True)
    is_primary = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("supplier_links", lazy=True))
    supplier = db.relationship("Supplier")


class SupplierProduct(db.Model):
    """Catalog of product codes known to the supplier hub (synced externally)."""
    __tablename__ = "supplier_products"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_code = db.Column(db.String(128), nullable=False, unique=True)
    name_en = db.Column(db.String(255), nullable=True)
    name_ar = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_available = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<SupplierProduct code={self.product_code!r} name={self.name_en!r}>"
