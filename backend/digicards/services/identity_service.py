# Overview: Resolves a customer's local account ids from a caller id and email.

"""
Customer identity resolution.

WHY: The caller's id can come from the external auth service and have no
local users row, while historical orders and cards may point at any local
account sharing the caller's email. Email (case-insensitive) is the
reconciliation key.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import func

from ..extensions import db
from ..models import User


@dataclass
class Identity:
    effective_user_id: str | None
    user_ids: list[str] = field(default_factory=list)
    email: str | None = None


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    email = email.strip().lower()
    return email or None


def find_user_by_email(email: str | None, tenant_id: int | None = None) -> User | None:
    email = normalize_email(email)
    if not email:
        return None
    query = db.session.query(User).filter(func.lower(User.email) == email)
    if tenant_id is not None:
        query = query.filter(User.tenant_id == tenant_id)
    return query.order_by(User.created_at.asc(), User.id.asc()).first()


def resolve_customer_user_id(tenant_id: int, email: str | None, user_id: str | None) -> str | None:
    """
    Owner id used when persisting codes for an order.

    Order: same-tenant email match, any-tenant email match, caller-supplied id.
    """
    user = find_user_by_email(email, tenant_id) or find_user_by_email(email)
    if user:
        return user.id
    return user_id or None


def resolve_identity(tenant_id: int, user_id: str | None, email: str | None) -> Identity:
    """All local ids that belong to the caller, plus the one to write to."""
    email = normalize_email(email)

    ids: list[str] = []
    if email:
        users = (
            db.session.query(User)
            .filter(func.lower(User.email) == email)
            .order_by(User.created_at.asc(), User.id.asc())
            .all()
        )
        ids.extend(u.id for u in users)
    if user_id and user_id not in ids:
        ids.append(user_id)

    local_user = None
    if user_id:
        local_user = db.session.get(User, user_id)
    if local_user is None and email:
        local_user = find_user_by_email(email, tenant_id) or find_user_by_email(email)

    effective_user_id = local_user.id if local_user else user_id
    effective_email = normalize_email(local_user.email) if local_user and local_user.email else email
    if effective_user_id and effective_user_id not in ids:
        ids.append(effective_user_id)

    return Identity(effective_user_id=effective_user_id, user_ids=ids, email=effective_email)
