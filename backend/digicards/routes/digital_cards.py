# Overview: Flask API routes for digital card delivery, customer inventory, and reveal.

# backend/digicards/routes/digital_cards.py
"""
Digital Cards API Routes

WHY: Storefront and admin clients need to trigger delivery, list the
customer's codes, and reveal wallet-pending orders.

DESIGN:
- Thin layer: parse input, call one service, translate domain errors
- Caller context comes from X-Tenant-Id / X-User-Id / X-User-Email headers
  set by the auth gateway (see decorators.require_tenant_context)
- Domain errors map to 400/402/404 through errors.http_status_for; anything
  else is logged and returned as a generic 500
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import Order
from ..errors import DigicardsError, http_status_for
from ..services import fulfillment_service, inventory_reconcile_service, reveal_service
from ..services.card_inventory_service import mark_as_used
from ..services.identity_service import resolve_identity
from ..decorators import require_tenant_context, require_customer


digital_cards_bp = Blueprint("digital_cards", __name__, url_prefix="/api/digital-cards")


def _error_response(e: DigicardsError):
    return jsonify({"error": str(e)}), http_status_for(e)


def _tenant_order(order_id: int) -> Order | None:
    return db.session.query(Order).filter_by(id=order_id, tenant_id=g.tenant_id).first()


def _optional_int(payload: dict, key: str):
    value = payload.get(key)
    if value is None or value == "":
        return None
    return int(value)


# =============================================================================
# DELIVERY
# =============================================================================

@digital_cards_bp.post("/orders/<int:order_id>/fulfill")
@require_tenant_context
def fulfill_order_route(order_id: int):
    """
    Run the delivery pipeline for an order.

    Request body (all optional):
    {
        "user_id": "abc123",
        "delivery_options": ["inventory", "text", "excel"],
        "customer_email": "buyer@example.com",
        "customer_name": "Buyer",
        "customer_phone": "+966500000000"
    }

    A result with zero codes still returns 200 with "error"/"errorAr" set.
    """
    payload = request.get_json(silent=True) or {}
    options = payload.get("delivery_options")
    if options is not None and not isinstance(options, list):
        return jsonify({"error": "delivery_options must be a list"}), 400

    if not _tenant_order(order_id):
        return jsonify({"error": "Order not found"}), 404

    try:
        result = fulfillment_service.process_digital_delivery(
            order_id,
            user_id=payload.get("user_id") or g.user_id,
            delivery_options=options,
            customer_email=payload.get("customer_email"),
            customer_name=payload.get("customer_name"),
            customer_phone=payload.get("customer_phone"),
        )
        return jsonify(result.to_dict()), 200
    except DigicardsError as e:
        db.session.rollback()
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to fulfill order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500


@digital_cards_bp.get("/orders/<int:order_id>/files")
@require_tenant_context
def list_order_files_route(order_id: int):
    if not _tenant_order(order_id):
        return jsonify({"error": "Order not found"}), 404
    try:
        return jsonify({"files": fulfillment_service.get_delivery_files(order_id)}), 200
    except DigicardsError as e:
        return _error_response(e)


# =============================================================================
# CUSTOMER INVENTORY
# =============================================================================

@digital_cards_bp.get("/inventory")
@require_tenant_context
@require_customer
def get_inventory_route():
    """List the caller's cards. Healing runs first and never fails the read."""
    try:
        cards = inventory_reconcile_service.get_customer_inventory(g.tenant_id, g.user_id, g.user_email)
        return jsonify({"cards": cards, "count": len(cards)}), 200
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to load inventory")
        return jsonify({"error": "Internal server error"}), 500


@digital_cards_bp.post("/inventory/reveal")
@require_tenant_context
@require_customer
def reveal_route():
    """
    Reveal codes on a wallet-pending order.

    Request body (one of):
    {"order_id": 12} | {"card_order_id": 7} | {"card_id": 301}

    402 when the wallet balance is short; nothing is changed in that case.
    """
    payload = request.get_json(silent=True) or {}
    try:
        order_id = _optional_int(payload, "order_id")
        card_order_id = _optional_int(payload, "card_order_id")
        card_id = _optional_int(payload, "card_id")
    except (TypeError, ValueError):
        return jsonify({"error": "order_id, card_order_id, and card_id must be integers"}), 400

    if order_id is None and card_order_id is None and card_id is None:
        return jsonify({"error": "order_id, card_order_id, or card_id required"}), 400

    identity = resolve_identity(g.tenant_id, g.user_id, g.user_email)
    if not identity.effective_user_id:
        return jsonify({"error": "Authentication required"}), 401

    try:
        result = reveal_service.reveal(
            g.tenant_id,
            identity.effective_user_id,
            order_id=order_id,
            card_order_id=card_order_id,
            card_id=card_id,
            email=g.user_email,
        )
        return jsonify(result.to_dict()), 200
    except DigicardsError as e:
        return _error_response(e)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to reveal codes")
        return jsonify({"error": "Internal server error"}), 500


@digital_cards_bp.post("/inventory/mark-used")
@require_tenant_context
@require_customer
def mark_used_route():
    """
    Mark owned cards as used.

    Request body:
    {"card_ids": [301, 302]}
    """
    payload = request.get_json(silent=True) or {}
    card_ids = payload.get("card_ids")
    if not isinstance(card_ids, list) or not card_ids:
        return jsonify({"error": "card_ids must be a non-empty list"}), 400
    try:
        card_ids = [int(card_id) for card_id in card_ids]
    except (TypeError, ValueError):
        return jsonify({"error": "card_ids must be integers"}), 400

    identity = resolve_identity(g.tenant_id, g.user_id, g.user_email)
    try:
        updated = mark_as_used(g.tenant_id, identity.user_ids, card_ids)
        return jsonify({"updated": updated}), 200
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to mark cards as used")
        return jsonify({"error": "Internal server error"}), 500
