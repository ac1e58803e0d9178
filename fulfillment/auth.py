"""Token authentication for operator endpoints."""
import hmac
from functools import wraps

from flask import current_app, jsonify, request

from fulfillment.logging_config import get_logger

logger = get_logger(__name__)

ADMIN_TOKEN_HEADER = "X-Admin-Token"


def get_actor():
    """Name recorded in audit entries for operator actions."""
    return request.headers.get("X-Admin-Actor") or "admin"


def admin_required(f):
    """
    Decorator to require the shared admin token for a route.

    Returns 401 Unauthorized if the token is missing, wrong, or not configured.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("ADMIN_TOKEN")
        provided = request.headers.get(ADMIN_TOKEN_HEADER)
        if not expected:
            logger.error("ADMIN_TOKEN is not configured; rejecting admin request", path=request.path)
            return jsonify({"error": "Authentication required"}), 401
        if not provided or not hmac.compare_digest(provided, expected):
            logger.warning("Rejected admin request with invalid token", path=request.path)
            return jsonify({"error": "Authentication required"}), 401
        return f(*args, **kwargs)
    return decorated_function
