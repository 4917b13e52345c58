# Overview: Flask API routes for orders; creation, line edits, voids, balance and activity lookups.

# backend/payrecon/routes/orders.py
"""
Order API Routes

WHY: Upstream systems create orders and edit their lines; the payment
screens ask for the balance. Line edits on paid orders do not move money
here: the response says whether an adjustment is required and the
adjustment endpoints settle it.
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import PaymentError
from ..services import order_service
from ..services.activity_service import list_activity
from ..services.ledger_store import get_order, reconciled_balance


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _charges_from(data: dict) -> dict:
    keys = order_service.CHARGE_FIELDS + ("po_accept",)
    return {key: data[key] for key in keys if key in data}


# =============================================================================
# ORDER CREATION / EDITS
# =============================================================================

@orders_bp.post("")
def create_order_route():
    """
    Create an unpaid order.

    Request body:
    {
        "customer_id": 1,
        "lines": [
            {"description": "Tee", "sizes": [{"size_label": "M", "quantity": 2, "unit_price_cents": 1500}]}
        ],
        "shipping_cost_cents": 500,   (optional, also tax/discount/handling/freight)
        "po_accept": null,            (optional)
        "estimated_delivery": "2026-03-01T00:00:00Z",  (optional)
        "notes": "...",               (optional)
        "processed_by": "clerk@example.com"  (optional)
    }

    Returns:
        201: Order created
        400: Invalid input
        404: Customer not found
    """
    try:
        data = request.get_json(silent=True) or {}
        customer_id = data.get("customer_id")
        if not isinstance(customer_id, int):
            return jsonify({"error": "customer_id required"}), 400

        order = order_service.create_order(
            customer_id,
            data.get("lines"),
            charges=_charges_from(data),
            estimated_delivery=data.get("estimated_delivery"),
            notes=data.get("notes"),
            performed_by=data.get("processed_by"),
        )
        return jsonify({"order": order.to_dict()}), 201

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = get_order(order_id)
        body = {"order": order.to_dict()}
        if order.invoice is not None:
            body["invoice"] = order.invoice.to_dict()
        return jsonify(body), 200

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.put("/<int:order_id>/lines")
def replace_lines_route(order_id: int):
    """
    Replace an order's lines (upstream edit).

    Request body: {"lines": [...], "shipping_cost_cents": ..., "processed_by": ...}

    Returns:
        200: {order, original_total_cents, new_total_cents, difference_cents, adjustment_required}
    """
    try:
        data = request.get_json(silent=True) or {}
        result = order_service.replace_order_lines(
            order_id,
            data.get("lines"),
            charges=_charges_from(data),
            performed_by=data.get("processed_by"),
        )
        return jsonify(result), 200

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to replace order lines")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/void")
def void_order_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = order_service.void_order(
            order_id,
            reason=data.get("reason") or "",
            performed_by=data.get("processed_by"),
        )
        return jsonify({"order": order.to_dict()}), 200

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to void order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@orders_bp.get("/<int:order_id>/balance")
def get_balance_route(order_id: int):
    """
    Balance for an order.

    `balance` is derived from the current lines. `collectable` is computed
    against the last reconciled total, which is what a capture may take.
    """
    try:
        balance = order_service.get_order_balance(order_id)
        order = get_order(order_id)
        collectable = reconciled_balance(order)
        return jsonify({
            "order_id": order_id,
            "balance": balance.to_dict(),
            "collectable": collectable.to_dict(),
            "stored_total_cents": order.total_amount_cents,
            "adjustment_required": (
                (order.paid_amount_cents or 0) > 0
                and balance.total_cents != order.total_amount_cents
            ),
        }), 200

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get order balance")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/activity")
def get_activity_route(order_id: int):
    try:
        get_order(order_id)
        entries = list_activity(order_id)
        return jsonify({"activity": [e.to_dict() for e in entries]}), 200

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get order activity")
        return jsonify({"error": "Internal server error"}), 500
