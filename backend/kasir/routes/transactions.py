# Overview: Flask API routes for point-of-sale transactions; parses input and returns JSON responses.

# backend/kasir/routes/transactions.py
"""
Transaction API Routes

WHY: Checkout endpoint for cashiers plus the store's sales history.

SECURITY:
- Owner or active member of the store only
- Prices are taken from the catalog; request prices are ignored
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import transaction_service
from ..validation import ServiceError
from ..decorators import require_auth


transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/v1")


@transactions_bp.post("/stores/<int:store_id>/transactions")
@require_auth
def create_transaction_route(store_id: int):
    """
    Record a sale.

    Request body:
    {
        "items": [{"variant_id": 12, "quantity": 2}],
        "payment_method": "CASH",          (CASH/TUNAI or CREDIT/KASBON)
        "amount_paid": 50000,              (required for CASH)
        "customer": {"name": "...", "phone": "..."},   (required for CREDIT)
        "notes": "..."
    }

    Returns:
        201: Transaction with items, customer and cashier
        400: Invalid input or insufficient payment
        403: No access to the store
        409: Insufficient stock
    """
    try:
        txn = transaction_service.create_transaction(
            request.get_json(silent=True),
            store_id,
            g.current_user.id,
        )
        return jsonify({"transaction": txn.to_dict()}), 201

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("/stores/<int:store_id>/transactions")
@require_auth
def list_transactions_route(store_id: int):
    """
    Query params: page, limit (1-100), search (invoice number, customer or
    cashier name), payment_method
    """
    try:
        result = transaction_service.get_history_all(store_id, g.current_user.id, request.args.to_dict())
        return jsonify(result), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list transactions")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("/transactions/<int:transaction_id>")
@require_auth
def get_transaction_route(transaction_id: int):
    try:
        txn = transaction_service.get_history_by_id(transaction_id, g.current_user.id)
        return jsonify({"transaction": txn.to_dict()}), 200

    except ServiceError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get transaction")
        return jsonify({"error": "Internal server error"}), 500
