from __future__ import annotations

from ..extensions import db
from digicards.time_utils import to_utc_z


WALLET_TX_TOPUP = "TOPUP"
WALLET_TX_PURCHASE = "PURCHASE"
WALLET_TX_REFUND = "REFUND"
WALLET_TX_ADJUSTMENT = "ADJUSTMENT"

WALLET_TX_COMPLETED = "COMPLETED"


class Wallet(db.Model):
    """
    Customer wallet. One per user.

    INVARIANT: balance_cents never goes negative. Every change is paired with
    an append-only WalletTransaction written in the same DB transaction.
    """
    __tablename__ = "wallets"
    __table_args__ = (
        db.UniqueConstraint("user_id", name="uq_wallets_user"),
        db.CheckConstraint("balance_cents >= 0", name="ck_wallets_balance_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=True, index=True)
    user_id = db.Column(db.String(64), nullable=False)

    balance_cents = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="SAR")

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Wallet id={self.id} user_id={self.user_id!r} balance_cents={self.balance_cents}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "balance_cents": self.balance_cents,
            "currency": self.currency,
            "updated_at": to_utc_z(self.updated_at),
        }


class WalletTransaction(db.Model):
    """
    Append-only wallet ledger.

    amount_cents is signed: positive for credits, negative for debits.
    IMMUTABLE: rows are never updated or deleted.
    """
    __tablename__ = "wallet_transactions"
    __table_args__ = (
        db.Index("ix_wallet_txns_wallet_created", "wallet_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey("wallets.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_before_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False)

    description = db.Column(db.String(255), nullable=True)
    description_ar = db.Column(db.String(255), nullable=True)
    reference = db.Column(db.String(64), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default=WALLET_TX_COMPLETED)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    wallet = db.relationship("Wallet", backref=db.backref("transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wallet_id": self.wallet_id,
            "type": self.type,
            "amount_cents": self.amount_cents,
            "balance_before_cents": self.balance_before_cents,
            "balance_after_cents": self.balance_after_cents,
            "currency": self.currency,
            "description": self.description,
            "description_ar": self.description_ar,
            "reference": self.reference,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
        }
