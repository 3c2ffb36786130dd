# Overview: Flask API routes for the customer cart; parses input and returns JSON responses.

from flask import Blueprint, jsonify, g, current_app

from ..actors import ACTOR_USER
from ..decorators import require_actor
from ..errors import DomainError
from ..services import cart_service
from ..validation import require_json, get_int

cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


@cart_bp.get("")
@require_actor(ACTOR_USER)
def get_cart_route():
    try:
        return jsonify(cart_service.get_cart(g.actor.actor_id)), 200
    except Exception:
        current_app.logger.exception("Failed to load cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.post("")
@require_actor(ACTOR_USER)
def add_to_cart_route():
    """
    Add an offer to the cart.

    Request body:
    {
        "offer_id": 12,
        "quantity": 2,
        "replace": false   (true empties a cart holding another business's items)
    }

    Returns:
        200: cart
        409: CART_BUSINESS_CONFLICT / INSUFFICIENT_QUANTITY / OFFER_INACTIVE
    """
    try:
        data = require_json()
        cart = cart_service.add_item(
            g.actor.actor_id,
            get_int(data, "offer_id"),
            get_int(data, "quantity", required=False, default=1),
            replace=bool(data.get("replace", False)),
        )
        return jsonify(cart), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to add to cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.put("")
@require_actor(ACTOR_USER)
def update_cart_route():
    """Set the quantity of a cart line. Body: {"offer_id": 12, "quantity": 3}"""
    try:
        data = require_json()
        cart = cart_service.update_item(
            g.actor.actor_id,
            get_int(data, "offer_id"),
            get_int(data, "quantity"),
        )
        return jsonify(cart), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("/<int:offer_id>")
@require_actor(ACTOR_USER)
def remove_from_cart_route(offer_id: int):
    try:
        return jsonify(cart_service.remove_item(g.actor.actor_id, offer_id)), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to remove cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("")
@require_actor(ACTOR_USER)
def clear_cart_route():
    try:
        removed = cart_service.clear_cart(g.actor.actor_id)
        return jsonify({"removed": removed}), 200
    except Exception:
        current_app.logger.exception("Failed to clear cart")
        return jsonify({"error": "Internal server error"}), 500
