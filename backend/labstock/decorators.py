# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

ACTOR_HEADER = "X-Actor-Id"
MAX_ACTOR_ID_LENGTH = 64


def require_actor(f):
    """
    Require an acting user identity on the request.

    Identity is established upstream (gateway / auth service) and forwarded
    in the X-Actor-Id header. No authorization happens here.

    Sets:
    - g.actor_id: the opaque actor identifier recorded on ledger entries

    Returns 401 if the header is missing or blank, 400 if it is too long.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = (request.headers.get(ACTOR_HEADER) or "").strip()

        if not actor_id:
            return jsonify({"error": "Actor identity required", "kind": "unauthenticated"}), 401

        if len(actor_id) > MAX_ACTOR_ID_LENGTH:
            return jsonify({
                "error": f"{ACTOR_HEADER} exceeds max length {MAX_ACTOR_ID_LENGTH}",
                "kind": "invalid_request",
            }), 400

        g.actor_id = actor_id
        return f(*args, **kwargs)

    return decorated_function
