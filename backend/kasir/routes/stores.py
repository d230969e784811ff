# Overview: Flask API routes for stores and store members; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import store_service, subscription_service
from ..validation import ServiceError, coerce_int, require_fields
from ..decorators import require_auth, require_subscription


stores_bp = Blueprint("stores", __name__, url_prefix="/api/v1/stores")


@stores_bp.post("")
@require_auth
@require_subscription
def create_store_route():
    """
    Create a store owned by the caller.

    Request body: {"name": "...", "store_type"?, "address"?, "whatsapp"?, "tax_rate_bps"?}

    Returns:
        201: Store created
        403: Package store limit reached (details carry the entitlement decision)
        409: Caller already owns a store with this name
    """
    try:
        decision = subscription_service.can_create_store(g.current_user.id)
        store = store_service.create_store(g.current_user.id, request.get_json(silent=True), decision)
        return jsonify({"store": store.to_dict()}), 201

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create store")
        return jsonify({"error": "Internal server error"}), 500


@stores_bp.post("/<int:store_id>/members")
@require_auth
@require_subscription
def add_member_route(store_id: int):
    """
    Add a cashier or manager to a store. Owner only.

    Request body: {"user_id": 7, "role": "CASHIER"}
    """
    try:
        data = require_fields(request.get_json(silent=True), "user_id")
        member = store_service.add_member(
            store_id,
            g.current_user.id,
            coerce_int(data["user_id"], "user_id", minimum=1),
            role=data.get("role") or "CASHIER",
        )
        return jsonify({"member": member.to_dict()}), 201

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to add store member")
        return jsonify({"error": "Internal server error"}), 500
