# Overview: Flask API routes for subscription operations; parses input and returns JSON responses.

"""
Subscription API Routes

Read-only views of the package catalog and the caller's own subscription.
Subscriptions are only ever created through a successful payment.
"""

from flask import Blueprint, jsonify, g, current_app

from ..services import subscription_service
from ..decorators import require_auth


subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/api/v1/subscriptions")


@subscriptions_bp.get("/packages")
def list_packages_route():
    """Active packages, flat and grouped by package name. Public."""
    try:
        return jsonify(subscription_service.get_all_packages()), 200
    except Exception:
        current_app.logger.exception("Failed to list subscription packages")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.get("/my-subscription")
@require_auth
def my_subscription_route():
    subscription = subscription_service.get_active_subscription(g.current_user.id)
    return jsonify({
        "subscription": subscription.to_dict() if subscription else None,
        "has_subscription": subscription is not None,
    }), 200


@subscriptions_bp.get("/status")
@require_auth
def subscription_status_route():
    """has_access, days_left and is_expiring for the caller."""
    try:
        return jsonify(subscription_service.check_subscription_status(g.current_user.id)), 200
    except Exception:
        current_app.logger.exception("Failed to check subscription status")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.get("/entitlements")
@require_auth
def entitlements_route():
    """Whether the caller may create another store right now."""
    decision = subscription_service.can_create_store(g.current_user.id)
    return jsonify({"can_create_store": decision.to_dict()}), 200
