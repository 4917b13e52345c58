# Overview: Flask API routes for customer credit lines, account balance and store credit.

from flask import Blueprint, request, jsonify, current_app

from ..errors import PaymentError
from ..services.ledger_store import (
    account_balance,
    get_customer,
    list_account_transactions,
    list_credit_memos,
    store_credit_balance,
)


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.get("/<int:customer_id>/credit")
def customer_credit_route(customer_id: int):
    """
    Credit position for a customer: credit line, account balance
    (credits - debits), store credit and the memos it can be spent from,
    recent entries.
    """
    try:
        customer = get_customer(customer_id)
        limit = min(request.args.get("limit", 50, type=int) or 50, 500)
        return jsonify({
            "customer": customer.to_dict(),
            "credit_limit_cents": customer.credit_limit_cents,
            "credit_used_cents": customer.credit_used_cents,
            "available_credit_cents": customer.available_credit_cents,
            "account_balance_cents": account_balance(customer.id),
            "store_credit_cents": store_credit_balance(customer.id),
            "credit_memos": [m.to_dict() for m in list_credit_memos(customer.id)],
            "account_transactions": [t.to_dict() for t in list_account_transactions(customer.id, limit)],
        }), 200

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get customer credit")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>/credit-memos")
def customer_credit_memos_route(customer_id: int):
    """
    Credit memos for a customer, newest first.

    Query params: all=1 to include fully applied memos
    """
    try:
        get_customer(customer_id)
        spendable_only = request.args.get("all", "0") not in ("1", "true")
        memos = list_credit_memos(customer_id, spendable_only=spendable_only)
        return jsonify({"credit_memos": [m.to_dict() for m in memos]}), 200

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list credit memos")
        return jsonify({"error": "Internal server error"}), 500
