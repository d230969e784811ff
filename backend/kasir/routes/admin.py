# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

# backend/kasir/routes/admin.py
"""
Admin API Routes

Out-of-band fixes for subscriptions and payments. Every route requires an
authenticated ADMIN user.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import get_payment_gateway
from ..services import payment_service, reminder_service, subscription_service
from ..validation import ServiceError, coerce_int, require_fields
from ..decorators import require_auth, require_admin


admin_bp = Blueprint("admin", __name__, url_prefix="/api/v1/admin")


@admin_bp.post("/subscriptions/<int:user_id>/package")
@require_auth
@require_admin
def change_package_route(user_id: int):
    """Request body: {"package_id": 2}"""
    try:
        data = require_fields(request.get_json(silent=True), "package_id")
        result = subscription_service.change_subscription_package(
            user_id,
            coerce_int(data["package_id"], "package_id", minimum=1),
            g.current_user.id,
        )
        current_app.logger.info(
            "Admin %s changed package of user %s to %s", g.current_user.id, user_id, data["package_id"]
        )
        return jsonify(result), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to change subscription package")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/subscriptions/<int:user_id>/extend")
@require_auth
@require_admin
def extend_subscription_route(user_id: int):
    """Request body: {"additional_days": 30}"""
    try:
        data = require_fields(request.get_json(silent=True), "additional_days")
        result = subscription_service.extend_subscription(
            user_id,
            coerce_int(data["additional_days"], "additional_days", minimum=1, maximum=3650),
            g.current_user.id,
        )
        current_app.logger.info(
            "Admin %s extended subscription of user %s by %s day(s)",
            g.current_user.id, user_id, data["additional_days"],
        )
        return jsonify(result), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to extend subscription")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/subscriptions/expire")
@require_auth
@require_admin
def expire_subscriptions_route():
    """Run the expiry sweep now."""
    try:
        expired = reminder_service.expire_subscriptions()
        return jsonify({"expired": expired}), 200
    except Exception:
        current_app.logger.exception("Expiry sweep failed")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/payments/<merchant_order_id>/reconcile")
@require_auth
@require_admin
def reconcile_payment_route(merchant_order_id: str):
    """Query the gateway for a PENDING payment, or retry activation for a SUCCESS one."""
    try:
        result = payment_service.reconcile_payment(merchant_order_id, gateway=get_payment_gateway())
        return jsonify(result), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to reconcile payment")
        return jsonify({"error": "Internal server error"}), 500
