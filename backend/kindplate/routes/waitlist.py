# Overview: Flask API routes for waitlist subscriptions.

from flask import Blueprint, jsonify, g, current_app, request

from ..actors import ACTOR_USER
from ..decorators import require_actor
from ..errors import DomainError, ValidationError
from ..services import waitlist_service
from ..validation import require_json, get_int, get_number, get_str

waitlist_bp = Blueprint("waitlist", __name__, url_prefix="/api/waitlist")


@waitlist_bp.post("/subscriptions")
@require_actor(ACTOR_USER)
def subscribe_route():
    """
    Subscribe to a scope.

    Request body:
    {
        "scope_type": "offer" | "business" | "category" | "area",
        "scope_id": 12,                 (not for area)
        "latitude": 55.75, "longitude": 37.61, "radius_km": 5   (area only)
    }
    """
    try:
        data = require_json()
        scope_type = get_str(data, "scope_type", max_length=16)
        if not scope_type:
            raise ValidationError("scope_type is required")
        sub, created = waitlist_service.subscribe(
            g.actor.actor_id,
            scope_type,
            scope_id=get_int(data, "scope_id", required=False),
            latitude=get_number(data, "latitude"),
            longitude=get_number(data, "longitude"),
            radius_km=get_number(data, "radius_km"),
        )
        return jsonify({"subscription": sub.to_dict(), "created": created}), 201 if created else 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to subscribe")
        return jsonify({"error": "Internal server error"}), 500


@waitlist_bp.get("/subscriptions")
@require_actor(ACTOR_USER)
def list_subscriptions_route():
    try:
        subs = waitlist_service.list_subscriptions(g.actor.actor_id)
        return jsonify({"subscriptions": [s.to_dict() for s in subs]}), 200
    except Exception:
        current_app.logger.exception("Failed to list subscriptions")
        return jsonify({"error": "Internal server error"}), 500


@waitlist_bp.delete("/subscriptions/<int:subscription_id>")
@require_actor(ACTOR_USER)
def unsubscribe_route(subscription_id: int):
    try:
        if not waitlist_service.unsubscribe(g.actor.actor_id, subscription_id):
            return jsonify({"error": "SUBSCRIPTION_NOT_FOUND", "message": "Subscription not found"}), 404
        return jsonify({"deleted": True}), 200
    except Exception:
        current_app.logger.exception("Failed to unsubscribe")
        return jsonify({"error": "Internal server error"}), 500


@waitlist_bp.delete("/subscriptions")
@require_actor(ACTOR_USER)
def unsubscribe_scope_route():
    """Unsubscribe by scope: ?scope_type=offer&scope_id=12"""
    try:
        scope_type = request.args.get("scope_type") or ""
        scope_id = get_int(request.args, "scope_id", required=False)
        deleted = waitlist_service.unsubscribe_scope(g.actor.actor_id, scope_type, scope_id)
        return jsonify({"deleted": deleted}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to unsubscribe from scope")
        return jsonify({"error": "Internal server error"}), 500
