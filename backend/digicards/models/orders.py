from __future__ import annotations

from ..extensions import db
from digicards.time_utils import to_utc_z


# Storefront order status
ORDER_STATUS_PENDING = "PENDING"
ORDER_STATUS_PROCESSING = "PROCESSING"
ORDER_STATUS_CONFIRMED = "CONFIRMED"
ORDER_STATUS_APPROVED = "APPROVED"
ORDER_STATUS_SHIPPED = "SHIPPED"
ORDER_STATUS_DELIVERED = "DELIVERED"
ORDER_STATUS_CANCELLED = "CANCELLED"

# Orders whose delivery payloads count as historical purchases
FULFILLED_ORDER_STATUSES = [
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_APPROVED,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_PROCESSING,
]

PAYMENT_STATUS_PENDING = "PENDING"
PAYMENT_STATUS_SUCCEEDED = "SUCCEEDED"
PAYMENT_STATUS_FAILED = "FAILED"
PAYMENT_STATUS_REFUNDED = "REFUNDED"

# Explicit wallet state (NULL on rows written before the column existed)
WALLET_STATE_NONE = "NONE"
WALLET_STATE_PENDING = "PENDING_WALLET_DEDUCTION"
WALLET_STATE_DEDUCTED = "DEDUCTED"

# Standalone card-purchase (fulfillment record) statuses
CARD_ORDER_STATUS_PENDING = "PENDING"
CARD_ORDER_STATUS_PAID = "PAID"
CARD_ORDER_STATUS_DELIVERED = "DELIVERED"

CARD_ORDER_PAYMENT_PENDING = "PENDING"
CARD_ORDER_PAYMENT_COMPLETED = "COMPLETED"

LEGACY_PENDING_FLAG = "_walletDeductionPending"


class Order(db.Model):
    """
    Storefront order, created by checkout.

    This core only reads it, writes the delivery snapshot (delivery_files),
    and flips payment state during reveal.

    WALLET STATE:
    wallet_state is the source of truth for new writes. Rows created before
    it existed carry NULL and keep the flag in the billing_metadata /
    delivery_files blobs under "_walletDeductionPending"; those blobs are
    read for compatibility and cleared on reveal.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "order_number", name="uq_orders_tenant_number"),
        db.Index("ix_orders_customer_email", "customer_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    order_number = db.Column(db.String(64), nullable=False)

    user_id = db.Column(db.String(64), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)

    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="SAR")

    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_PENDING, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)
    wallet_state = db.Column(db.String(32), nullable=True)

    billing_metadata = db.Column(db.JSON, nullable=True)
    delivery_files = db.Column(db.JSON, nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    tenant = db.relationship("Tenant")
    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} payment={self.payment_status}>"

    @property
    def is_wallet_pending(self) -> bool:
        if self.wallet_state is not None:
            return self.wallet_state == WALLET_STATE_PENDING
        billing = self.billing_metadata or {}
        files = self.delivery_files or {}
        return billing.get(LEGACY_PENDING_FLAG) is True or files.get(LEGACY_PENDING_FLAG) is True

    @property
    def requires_reveal(self) -> bool:
        return bool((self.delivery_files or {}).get("requiresReveal"))

    @property
    def legacy_user_id(self) -> str | None:
        return (self.billing_metadata or {}).get("_userId")

    def set_wallet_state(self, state: str) -> None:
        """
        Record wallet state explicitly and clear the legacy blob flags.

        JSON columns are replaced, not mutated in place, so the ORM sees
        the change.
        """
        self.wallet_state = state
        pending = state == WALLET_STATE_PENDING
        if self.billing_metadata and LEGACY_PENDING_FLAG in self.billing_metadata:
            self.billing_metadata = {**self.billing_metadata, LEGACY_PENDING_FLAG: pending}
        if self.delivery_files:
            self.delivery_files = {
                **self.delivery_files,
                LEGACY_PENDING_FLAG: pending,
                "requiresReveal": pending,
                "isPendingWallet": pending,
            }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "total_amount_cents": self.total_amount_cents,
            "currency": self.currency,
            "status": self.status,
            "payment_status": self.payment_status,
            "wallet_state": self.wallet_state,
            "delivery_files": self.delivery_files,
            "paid_at": to_utc_z(self.paid_at),
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    price_cents = db.Column(db.Integer, nullable=False, default=0)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "price_cents": self.price_cents,
        }


class CardOrder(db.Model):
    """
    Fulfillment-order record. Cards point here through cards.order_id.

    Two kinds of rows share this table:
    - standalone card purchases (marketplace / legacy flow): user_id,
      total_with_tax_cents and payment_status describe the purchase;
    - fulfillment records for storefront orders: storefront_order_id is set
      and payment state lives on the storefront order.
    """
    __tablename__ = "card_orders"
    __table_args__ = (
        db.UniqueConstraint("storefront_order_id", name="uq_card_orders_storefront"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    order_number = db.Column(db.String(64), nullable=False)

    user_id = db.Column(db.String(64), nullable=True, index=True)
    storefront_order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)

    total_with_tax_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=CARD_ORDER_STATUS_PENDING, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=CARD_ORDER_PAYMENT_PENDING)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    storefront_order = db.relationship("Order")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<CardOrder id={self.id} number={self.order_number!r} storefront={self.storefront_order_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "storefront_order_id": self.storefront_order_id,
            "total_with_tax_cents": self.total_with_tax_cents,
            "status": self.status,
            "payment_status": self.payment_status,
            "paid_at": to_utc_z(self.paid_at),
            "created_at": to_utc_z(self.created_at),
        }
