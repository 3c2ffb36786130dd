# Overview: Flask API routes for orders, pickup QR and order audit events.

# backend/kindplate/routes/orders.py
"""
Order API Routes

Customer: checkout (draft), edit draft, confirm, cancel, list own orders,
fetch pickup QR.
Business: list orders, mark ready, verify pickup, cancel.
Admin / support: read order events.

Out-of-stock at checkout answers 409 OUT_OF_STOCK / INSUFFICIENT_QUANTITY;
a lost state race answers 409 STALE_STATE ("please refresh").
"""

from flask import Blueprint, jsonify, g, current_app, request

from ..actors import ACTOR_ADMIN, ACTOR_BUSINESS, ACTOR_USER
from ..decorators import require_actor
from ..errors import DomainError, ValidationError
from ..services import order_service, pickup_service, waitlist_service
from ..services.ledger_service import list_order_events
from ..services.lifecycle_service import VALID_STATUSES
from ..validation import require_json, get_clock_time, get_str

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _status_filter():
    status = request.args.get("status")
    if status and status not in VALID_STATUSES:
        raise ValidationError(f"Unknown status '{status}'")
    return status


# =============================================================================
# CONFIG / LISTS
# =============================================================================

@orders_bp.get("/config")
def order_config_route():
    return jsonify(order_service.get_pricing_config()), 200


@orders_bp.get("/mine")
@require_actor(ACTOR_USER)
def my_orders_route():
    try:
        orders = order_service.list_customer_orders(g.actor.actor_id, status=_status_filter())
        return jsonify({"orders": [o.to_dict() for o in orders]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list customer orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/business")
@require_actor(ACTOR_BUSINESS)
def business_orders_route():
    try:
        orders = order_service.list_business_orders(g.actor.actor_id, status=_status_filter())
        return jsonify({"orders": [o.to_dict() for o in orders]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list business orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_actor(ACTOR_USER, ACTOR_BUSINESS, ACTOR_ADMIN)
def get_order_route(order_id: int):
    try:
        order = order_service.get_order_for_actor(order_id, g.actor)
        return jsonify(order.to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# CHECKOUT
# =============================================================================

@orders_bp.post("/draft")
@require_actor(ACTOR_USER)
def create_draft_route():
    """
    Create a draft order from the cart, reserving every line.

    Request body (all optional):
    {
        "pickup_time_start": "18:00",
        "pickup_time_end": "18:30",
        "notes": "..."
    }
    """
    try:
        data = require_json()
        order = order_service.create_draft(
            g.actor.actor_id,
            pickup_time_start=get_clock_time(data, "pickup_time_start"),
            pickup_time_end=get_clock_time(data, "pickup_time_end"),
            notes=get_str(data, "notes"),
        )
        return jsonify(order.to_dict()), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create draft order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>")
@require_actor(ACTOR_USER)
def update_draft_route(order_id: int):
    try:
        data = require_json()
        order = order_service.update_draft(
            order_id,
            g.actor,
            pickup_time_start=get_clock_time(data, "pickup_time_start"),
            pickup_time_end=get_clock_time(data, "pickup_time_end"),
            notes=get_str(data, "notes"),
        )
        return jsonify(order.to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update draft order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/confirm")
@require_actor(ACTOR_USER)
def confirm_order_route(order_id: int):
    try:
        data = require_json()
        order = order_service.confirm(
            order_id,
            g.actor,
            pickup_time_start=get_clock_time(data, "pickup_time_start"),
            pickup_time_end=get_clock_time(data, "pickup_time_end"),
            notes=get_str(data, "notes"),
        )
        return jsonify(order.to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to confirm order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/ready")
@require_actor(ACTOR_BUSINESS, ACTOR_ADMIN)
def mark_ready_route(order_id: int):
    try:
        order = order_service.mark_ready(order_id, g.actor)
        return jsonify(order.to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to mark order ready")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_actor(ACTOR_USER, ACTOR_BUSINESS, ACTOR_ADMIN)
def cancel_order_route(order_id: int):
    try:
        data = require_json()
        order = order_service.cancel(order_id, g.actor, reason=get_str(data, "reason", max_length=255))
        waitlist_service.dispatch_pending_safely()
        return jsonify(order.to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PICKUP
# =============================================================================

@orders_bp.get("/<int:order_id>/qr")
@require_actor(ACTOR_USER)
def pickup_qr_route(order_id: int):
    """Customer pickup QR: {qr_code, pickup_code, payload, expires_at}."""
    try:
        return jsonify(pickup_service.issue_pickup_payload(order_id, g.actor)), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to issue pickup QR")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/pickup/verify")
@require_actor(ACTOR_BUSINESS)
def verify_pickup_route(order_id: int):
    """Business enters the customer's code. Body: {"code": "AB3K9QZP"}"""
    try:
        data = require_json()
        code = get_str(data, "code", max_length=64)
        if not code:
            raise ValidationError("code is required")
        order = pickup_service.verify(order_id, code, g.actor.actor_id)
        return jsonify({"verified": True, "order": order.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to verify pickup")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# AUDIT
# =============================================================================

@orders_bp.get("/<int:order_id>/events")
@require_actor(ACTOR_USER, ACTOR_BUSINESS, ACTOR_ADMIN)
def order_events_route(order_id: int):
    try:
        order = order_service.get_order_for_actor(order_id, g.actor)
        events = list_order_events(order.id)
        return jsonify({"order_id": order.id, "events": [e.to_dict() for e in events]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load order events")
        return jsonify({"error": "Internal server error"}), 500
