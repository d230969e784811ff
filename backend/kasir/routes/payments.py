# Overview: Flask API routes for subscription payments; parses input and returns JSON responses.

# backend/kasir/routes/payments.py
"""
Payment API Routes

WHY: Entry points for buying a subscription and for the gateway's
asynchronous result notification.

CALLBACK CONTRACT:
- POST /callback always answers 200 "OK", whatever happened internally.
  The gateway retries anything else without bound. Failures are logged and
  recorded on the payment instead.
- The callback carries no bearer token; it is authenticated by its
  signature.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import get_payment_gateway
from ..services import payment_service
from ..validation import ServiceError, ValidationError, coerce_int, require_fields
from ..decorators import require_auth


payments_bp = Blueprint("payments", __name__, url_prefix="/api/v1/payments")


# =============================================================================
# PAYMENT CREATION
# =============================================================================

@payments_bp.post("/create")
@require_auth
def create_payment_route():
    """
    Start a subscription payment.

    Request body: {"package_id": 1}

    Returns:
        201: New payment with payment_url
        200: Existing live payment (is_existing=true)
        403: Email not verified
        404: Unknown package
        409: User already holds a live subscription
        502: Gateway failure (payment recorded as FAILED)
    """
    try:
        data = require_fields(request.get_json(silent=True), "package_id")
        package_id = coerce_int(data["package_id"], "package_id", minimum=1)

        result = payment_service.create_subscription_payment(
            g.current_user.id,
            package_id,
            gateway=get_payment_gateway(),
        )
        return jsonify(result), 200 if result["is_existing"] else 201

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create payment")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# GATEWAY CALLBACK
# =============================================================================

@payments_bp.post("/callback")
def payment_callback_route():
    """
    Gateway result notification. Accepts JSON or form-encoded bodies.

    Always returns 200 "OK".
    """
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = request.form.to_dict()

    payment_service.acknowledge_callback(
        payload,
        gateway=get_payment_gateway(),
        strict_signature=bool(current_app.config.get("STRICT_SIGNATURE_VERIFICATION", True)),
    )
    return "OK", 200


# =============================================================================
# PAYMENT QUERIES
# =============================================================================

@payments_bp.get("/status/<merchant_order_id>")
@require_auth
def payment_status_route(merchant_order_id: str):
    """Status of one payment. Admins may read any payment; users only their own."""
    try:
        user_id = None if g.current_user.is_admin else g.current_user.id
        payment = payment_service.get_payment_status(merchant_order_id, user_id=user_id)
        return jsonify({"payment": payment}), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get payment status")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/history")
@require_auth
def payment_history_route():
    """
    Caller's payments, newest first.

    Query params: page (default 1), limit (1-100, default 10)
    """
    try:
        result = payment_service.get_user_payment_history(
            g.current_user.id,
            page=request.args.get("page", 1),
            limit=request.args.get("limit", 10),
        )
        return jsonify(result), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get payment history")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# SANDBOX HELPERS
# =============================================================================

@payments_bp.post("/dev/simulate-callback")
@require_auth
def simulate_callback_route():
    """
    Push a signed callback for one of the caller's payments through the
    normal pipeline. 404 unless DEV_PAYMENT_ENDPOINTS is enabled.

    Request body: {"merchant_order_id": "...", "result_code": "00"}
    """
    if not current_app.config.get("DEV_PAYMENT_ENDPOINTS"):
        return jsonify({"error": "Not found"}), 404

    try:
        data = require_fields(request.get_json(silent=True), "merchant_order_id")
        merchant_order_id = str(data["merchant_order_id"])
        result_code = str(data.get("result_code") or "00")
        if len(result_code) != 2 or not result_code.isdigit():
            raise ValidationError("result_code must be a two-digit code")

        # Ownership check; raises PaymentNotFoundError for other users' payments
        user_id = None if g.current_user.is_admin else g.current_user.id
        payment_service.get_payment_status(merchant_order_id, user_id=user_id)

        outcome = payment_service.simulate_callback(
            merchant_order_id,
            result_code,
            gateway=get_payment_gateway(),
        )
        return jsonify({"outcome": outcome.to_dict()}), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to simulate callback")
        return jsonify({"error": "Internal server error"}), 500
