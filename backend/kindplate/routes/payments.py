# Overview: Flask API routes for payments; provider webhook and status polling.

# backend/kindplate/routes/payments.py
"""
Payment API Routes

DESIGN:
- Customer starts a payment for a confirmed order and is sent to the
  provider's confirmation_url.
- The provider reports outcomes to /webhook (HMAC signed, fails closed).
- The customer app polls /order/<id>/status (or /<payment_id>/status), which
  also asks the provider. GET /api/payments lists the customer's payments.
Both paths end in the same idempotent status update.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..actors import ACTOR_ADMIN, ACTOR_BUSINESS, ACTOR_USER
from ..decorators import require_actor
from ..errors import DomainError
from ..services import payment_service
from ..services.payment_service import SIGNATURE_HEADER
from ..validation import require_json, get_int, get_str

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.post("/create")
@require_actor(ACTOR_USER)
def create_payment_route():
    """
    Start a payment.

    Request body:
    {
        "order_id": 42,
        "payment_method": "card" | "sbp",
        "return_url": "https://app.example/orders/42"
    }

    Returns:
        201: payment with confirmation_url
        409: PAYMENT_EXISTS / STALE_STATE
        502: PAYMENT_PROVIDER_ERROR
        504: PAYMENT_PROVIDER_TIMEOUT (payment stays pending)
    """
    try:
        data = require_json()
        payment = payment_service.create_payment(
            get_int(data, "order_id"),
            g.actor,
            payment_method=get_str(data, "payment_method", max_length=16) or "",
            return_url=get_str(data, "return_url", max_length=1024),
        )
        return jsonify({
            "payment": payment.to_dict(),
            "confirmation_url": payment.confirmation_url,
        }), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/webhook")
def provider_webhook_route():
    """Provider callback. Unsigned or badly signed bodies are rejected with 401."""
    try:
        payment = payment_service.handle_callback(
            request.get_data(cache=False),
            request.headers.get(SIGNATURE_HEADER),
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
        return jsonify({"received": True, "payment_id": payment.id, "status": payment.status}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/order/<int:order_id>/status")
@require_actor(ACTOR_USER, ACTOR_BUSINESS, ACTOR_ADMIN)
def payment_status_route(order_id: int):
    try:
        poll = g.actor.is_user
        return jsonify(payment_service.get_order_payment_status(order_id, g.actor, poll=poll)), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load payment status")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/<int:payment_id>/status")
@require_actor(ACTOR_USER, ACTOR_BUSINESS, ACTOR_ADMIN)
def single_payment_status_route(payment_id: int):
    """Status of one payment; the customer's request also polls the provider."""
    try:
        poll = g.actor.is_user
        return jsonify(payment_service.get_payment_status(payment_id, g.actor, poll=poll)), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to load payment status")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("")
@require_actor(ACTOR_USER)
def my_payments_route():
    try:
        payments = payment_service.list_customer_payments(
            g.actor.actor_id, status=request.args.get("status") or None
        )
        return jsonify({"payments": [p.to_dict() for p in payments]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500
