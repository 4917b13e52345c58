# Overview: Flask API routes for payment capture, checkout and credit memo redemption; returns JSON responses.

# backend/payrecon/routes/payments.py
"""
Payment Processing API Routes

WHY: Checkout and "pay remaining balance" screens capture money through
the capture orchestrator.

STATUS CODES:
- 201: captured and recorded (receipt)
- 202: captured, ledger recording pending reconciliation
- 400: invalid input (nothing happened)
- 402: declined by the gateway
- 409: an earlier attempt on the order has an unknown outcome
- 503/504: gateway unavailable / timed out (see outcome_unknown)
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import PaymentError
from ..services import capture_service
from ..services.ledger_store import list_payment_transactions


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


# =============================================================================
# CAPTURE
# =============================================================================

@payments_bp.post("/orders/<int:order_id>/capture")
def capture_route(order_id: int):
    """
    Capture a payment against an order's balance due.

    Request body:
    {
        "amount_cents": 10000,
        "payment_method": {"type": "card", "card_number": "...", "expiration_date": "12/30",
                           "cvv": "123", "cardholder_name": "..."},
        "billing": {"first_name": ..., "last_name": ..., "address": ..., "city": ...,
                    "state": ..., "zip": ..., "country": "USA"},
        "processed_by": "clerk@example.com"  (optional)
    }

    PAYMENT TYPES: card, ach, saved_card, manual (notes required)
    """
    try:
        data = request.get_json(silent=True) or {}
        receipt = capture_service.capture(
            order_id,
            data.get("payment_method"),
            data.get("amount_cents"),
            billing=data.get("billing"),
            processed_by=data.get("processed_by"),
        )
        status = 202 if receipt.reconciliation_pending else 201
        return jsonify({"receipt": receipt.to_dict()}), status

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to capture payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/checkout")
def checkout_route():
    """
    Create an order and capture payment on it in one call.

    Request body: the POST /api/orders body plus payment_method, billing and
    an optional amount_cents (defaults to the order total).
    """
    try:
        data = request.get_json(silent=True) or {}
        customer_id = data.get("customer_id")
        if not isinstance(customer_id, int):
            return jsonify({"error": "customer_id required"}), 400

        charges = {
            key: data[key]
            for key in (
                "shipping_cost_cents", "tax_amount_cents", "discount_amount_cents",
                "handling_charges_cents", "freight_charges_cents", "po_accept",
            )
            if key in data
        }
        order, receipt = capture_service.checkout(
            customer_id,
            data.get("lines"),
            data.get("payment_method"),
            data.get("amount_cents"),
            billing=data.get("billing"),
            charges=charges,
            estimated_delivery=data.get("estimated_delivery"),
            notes=data.get("notes"),
            processed_by=data.get("processed_by"),
        )
        status = 202 if receipt.reconciliation_pending else 201
        return jsonify({"order": order, "receipt": receipt.to_dict()}), status

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Checkout failed")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/orders/<int:order_id>/credit-memo")
def apply_credit_memo_route(order_id: int):
    """
    Pay an order's balance due from a customer's credit memo (store credit).

    Request body:
    {
        "credit_memo_id": 12,
        "amount_cents": 2500,               (optional; defaults to min(memo balance, due))
        "processed_by": "clerk@example.com" (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        credit_memo_id = data.get("credit_memo_id")
        if isinstance(credit_memo_id, bool) or not isinstance(credit_memo_id, int):
            return jsonify({"error": "credit_memo_id required"}), 400

        receipt = capture_service.apply_credit_memo(
            order_id,
            credit_memo_id,
            data.get("amount_cents"),
            processed_by=data.get("processed_by"),
        )
        return jsonify({"receipt": receipt.to_dict()}), 201

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to apply credit memo")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@payments_bp.get("/transactions")
def list_transactions_route():
    """
    Payment transaction ledger.

    Query params: order_id, customer_id, limit (default 100, max 500)
    """
    try:
        order_id = request.args.get("order_id", type=int)
        customer_id = request.args.get("customer_id", type=int)
        limit = min(request.args.get("limit", 100, type=int) or 100, 500)

        transactions = list_payment_transactions(order_id=order_id, customer_id=customer_id, limit=limit)
        return jsonify({"transactions": [t.to_dict() for t in transactions]}), 200

    except Exception:
        current_app.logger.exception("Failed to list payment transactions")
        return jsonify({"error": "Internal server error"}), 500
