# Overview: Request and permission decorators for API routes.

from functools import wraps
from flask import request, jsonify, g

from .services import session_service, subscription_service


def require_auth(f):
    """
    Require a valid bearer session.

    Sets g.current_user to the authenticated User. Returns 401 if the
    Authorization header is missing, the token is unknown, expired or
    revoked, or the account is deactivated.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        user = session_service.validate_session(token)

        if not user:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = user
        g.session_token = token

        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """Require the authenticated user to be an admin. Use after @require_auth."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not hasattr(g, 'current_user'):
            return jsonify({"error": "Authentication required"}), 401
        if not g.current_user.is_admin:
            return jsonify({"error": "Admin access required"}), 403
        return f(*args, **kwargs)
    return decorated_function


def require_subscription(f):
    """
    Require a live subscription. Use after @require_auth.

    Computed from the subscriptions table on every request, never from a
    cached flag on the user.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not hasattr(g, 'current_user'):
            return jsonify({"error": "Authentication required"}), 401

        if not subscription_service.has_active_subscription(g.current_user.id):
            return jsonify({
                "error": "Active subscription required",
                "details": {"requires_subscription": True},
            }), 403

        return f(*args, **kwargs)
    return decorated_function
