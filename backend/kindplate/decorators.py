# Overview: Request decorators resolving the calling actor for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app

from .actors import Actor, ACTOR_ADMIN, ACTOR_BUSINESS, ACTOR_USER

REQUEST_ACTOR_TYPES = {ACTOR_USER, ACTOR_BUSINESS, ACTOR_ADMIN}


def gateway_identity_loader(req) -> Actor | None:
    """
    Read the actor the authentication gateway put on the request.

    X-Actor-Type: user | business | admin
    X-Actor-Id:   customer id / business id / admin id
    """
    actor_type = (req.headers.get("X-Actor-Type") or "").strip().lower()
    actor_id = (req.headers.get("X-Actor-Id") or "").strip()
    if actor_type not in REQUEST_ACTOR_TYPES or not actor_id.isdigit():
        return None
    return Actor(actor_type, int(actor_id))


def require_actor(*allowed_types: str):
    """
    Require an authenticated actor, optionally of specific types.

    Sets g.actor. Returns 401 without an identity and 403 when the actor
    type is not allowed on this route.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            loader = current_app.config.get("IDENTITY_LOADER") or gateway_identity_loader
            actor = loader(request)
            if actor is None:
                return jsonify({"error": "Authentication required"}), 401
            if allowed_types and actor.actor_type not in allowed_types:
                return jsonify({"error": "Not allowed for this account type"}), 403
            g.actor = actor
            return f(*args, **kwargs)
        return decorated_function
    return decorator
