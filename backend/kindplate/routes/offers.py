# Overview: Flask API routes for offer availability (read and business restock).

from flask import Blueprint, jsonify, g, current_app

from ..actors import ACTOR_ADMIN, ACTOR_BUSINESS
from ..decorators import require_actor
from ..errors import DomainError
from ..services import offer_service, waitlist_service
from ..validation import require_json, get_int

offers_bp = Blueprint("offers", __name__, url_prefix="/api/offers")


@offers_bp.get("/<int:offer_id>")
def get_offer_route(offer_id: int):
    try:
        return jsonify(offer_service.get_offer(offer_id).to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load offer")
        return jsonify({"error": "Internal server error"}), 500


@offers_bp.post("/<int:offer_id>/restock")
@require_actor(ACTOR_BUSINESS, ACTOR_ADMIN)
def restock_offer_route(offer_id: int):
    """
    Change availability. Body: {"delta": 5} (negative removes units).

    Going from sold out to available notifies the waitlist.
    """
    try:
        data = require_json()
        offer = offer_service.restock_for_business(offer_id, get_int(data, "delta", positive=False), g.actor)
        waitlist_service.dispatch_pending_safely()
        return jsonify(offer.to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to restock offer")
        return jsonify({"error": "Internal server error"}), 500
