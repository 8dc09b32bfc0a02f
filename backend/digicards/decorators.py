# Overview: Request decorators that establish the caller's tenant and customer context.

from functools import wraps
from flask import request, jsonify, g

from .extensions import db
from .models import Tenant


def require_tenant_context(f):
    """
    Read the caller context set by the upstream auth layer.

    Sets the following Flask g attributes:
    - g.tenant_id: Tenant the request is scoped to - REQUIRED
    - g.user_id: Customer id (may be an external auth id with no local row)
    - g.user_email: Customer email, used to reconcile identities

    Returns 400 if X-Tenant-Id is missing or not a known active tenant.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        raw_tenant = (request.headers.get("X-Tenant-Id") or "").strip()
        if not raw_tenant.isdigit():
            return jsonify({"error": "X-Tenant-Id header required"}), 400

        tenant = db.session.get(Tenant, int(raw_tenant))
        if not tenant or not tenant.is_active:
            return jsonify({"error": "Unknown tenant"}), 400

        g.tenant_id = tenant.id
        g.user_id = (request.headers.get("X-User-Id") or "").strip() or None
        g.user_email = (request.headers.get("X-User-Email") or "").strip() or None
        return f(*args, **kwargs)

    return decorated_function


def require_customer(f):
    """Require a customer identity (X-User-Id or X-User-Email). Use after require_tenant_context."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not getattr(g, "user_id", None) and not getattr(g, "user_email", None):
            return jsonify({"error": "Authentication required"}), 401
        return f(*args, **kwargs)

    return decorated_function
