# Overview: Flask API route for scanning a pickup QR at the counter.

from flask import Blueprint, jsonify, g, current_app

from ..actors import ACTOR_BUSINESS
from ..decorators import require_actor
from ..errors import DomainError, ValidationError
from ..services import pickup_service
from ..validation import require_json, get_str

pickup_bp = Blueprint("pickup", __name__, url_prefix="/api/pickup")


@pickup_bp.post("/scan")
@require_actor(ACTOR_BUSINESS)
def scan_pickup_route():
    """
    Verify a scanned QR payload.

    Request body:
    {
        "payload": "kindplate:pickup:42:AB3K9QZP"
    }

    Returns:
        200: order completed
        403: WRONG_BUSINESS
        404: NOT_FOUND
        409: ALREADY_VERIFIED / INVALID_STATE
        422: CODE_MISMATCH
    """
    try:
        data = require_json()
        payload = get_str(data, "payload", max_length=256)
        if not payload:
            raise ValidationError("payload is required")
        order = pickup_service.verify_scanned(payload, g.actor.actor_id)
        return jsonify({"verified": True, "order": order.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to verify scanned pickup")
        return jsonify({"error": "Internal server error"}), 500
