from __future__ import annotations

import uuid

from ..extensions import db
from digicards.time_utils import to_utc_z


def _new_user_id() -> str:
    return uuid.uuid4().hex


class Tenant(db.Model):
    """
    Multi-tenant root: every store is a Tenant.

    Products, cards, suppliers and orders are all scoped by tenant_id.
    Card codes are unique within a tenant, not globally.
    """
    __tablename__ = "tenants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    name_ar = db.Column(db.String(255), nullable=True)
    subdomain = db.Column(db.String(64), nullable=True, unique=True, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Tenant id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "name_ar": self.name_ar,
            "subdomain": self.subdomain,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class User(db.Model):
    """
    Local customer account.

    The primary key is a string because accounts are mirrored from an
    external auth service: the same person can appear under several IDs
    (one per tenant, plus the upstream ID). Email is the reconciliation key
    and is always compared case-insensitively.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_tenant_email", "tenant_id", "email"),
    )

    id = db.Column(db.String(64), primary_key=True, default=_new_user_id)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=True, index=True)

    email = db.Column(db.String(255), nullable=True, index=True)
    name = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    tenant = db.relationship("Tenant", backref=db.backref("users", lazy=True))

    def __repr__(self) -> str:
        return f"<User id={self.id!r} email={self.email!r} tenant_id={self.tenant_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "created_at": to_utc_z(self.created_at),
        }
