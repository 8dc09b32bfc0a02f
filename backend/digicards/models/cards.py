from __future__ import annotations

from ..extensions import db
from digicards.time_utils import to_utc_z


CARD_STATUS_AVAILABLE = "AVAILABLE"
CARD_STATUS_RESERVED = "RESERVED"
CARD_STATUS_SOLD = "SOLD"
CARD_STATUS_USED = "USED"
CARD_STATUS_INVALID = "INVALID"
CARD_STATUS_EXPIRED = "EXPIRED"

VALID_CARD_STATUSES = [
    CARD_STATUS_AVAILABLE,
    CARD_STATUS_RESERVED,
    CARD_STATUS_SOLD,
    CARD_STATUS_USED,
    CARD_STATUS_INVALID,
    CARD_STATUS_EXPIRED,
]


class Card(db.Model):
    """
    One digital code (serial + optional PIN).

    INVARIANTS:
    - (tenant_id, card_code) is unique.
    - SOLD never transitions back to AVAILABLE; only RESERVED can be released.
    - order_id references the fulfillment record (card_orders), never the
      storefront order directly.
    - sold_to_user_id is a string and may hold an ID that has no local
      users row (accounts mirrored from the auth service).
    """
    __tablename__ = "cards"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "card_code", name="uq_cards_tenant_code"),
        db.Index("ix_cards_product_status", "product_id", "status"),
        db.Index("ix_cards_owner", "sold_to_user_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    card_code = db.Column(db.String(255), nullable=False)
    card_pin = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=CARD_STATUS_AVAILABLE, index=True)

    sold_to_user_id = db.Column(db.String(64), nullable=True)
    order_id = db.Column(db.Integer, db.ForeignKey("card_orders.id"), nullable=True, index=True)
    # Written by the reservation UPDATE so the winner can read back its rows
    reservation_token = db.Column(db.String(64), nullable=True, index=True)

    sold_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)
    imported_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product")
    order = db.relationship("CardOrder", backref=db.backref("cards", lazy=True))

    def __repr__(self) -> str:
        return f"<Card id={self.id} code={self.card_code!r} status={self.status} owner={self.sold_to_user_id!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "card_code": self.card_code,
            "card_pin": self.card_pin,
            "status": self.status,
            "sold_to_user_id": self.sold_to_user_id,
            "order_id": self.order_id,
            "sold_at": to_utc_z(self.sold_at),
            "expiry_date": to_utc_z(self.expiry_date),
        }
