# Overview: Flask API routes for post-payment adjustments; options, resolution, history, payment links.

from flask import Blueprint, request, jsonify, current_app

from ..errors import PaymentError
from ..services import adjustment_service


adjustments_bp = Blueprint("adjustments", __name__, url_prefix="/api")


@adjustments_bp.get("/orders/<int:order_id>/adjustments")
def list_adjustments_route(order_id: int):
    try:
        adjustments = adjustment_service.list_adjustments(order_id)
        return jsonify({"adjustments": [a.to_dict() for a in adjustments]}), 200

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list adjustments")
        return jsonify({"error": "Internal server error"}), 500


@adjustments_bp.get("/orders/<int:order_id>/adjustments/options")
def adjustment_options_route(order_id: int):
    """
    Query params (optional): original_amount_cents, new_amount_cents
    """
    try:
        options = adjustment_service.get_adjustment_options(
            order_id,
            original_amount_cents=request.args.get("original_amount_cents", type=int),
            new_amount_cents=request.args.get("new_amount_cents", type=int),
        )
        return jsonify(options), 200

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get adjustment options")
        return jsonify({"error": "Internal server error"}), 500


@adjustments_bp.post("/orders/<int:order_id>/adjustments")
def resolve_adjustment_route(order_id: int):
    """
    Settle an order total change.

    Request body:
    {
        "action": "collect_payment",   (collect_payment, send_payment_link, use_credit,
                                        issue_credit_memo, process_refund)
        "params": {"saved_method_id": 3},        (action specific, optional)
        "original_amount_cents": 10000,          (optional, default stored total)
        "new_amount_cents": 13000,               (optional, default derived total)
        "reason": "Added two items",
        "processed_by": "clerk@example.com"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        action = adjustment_service.parse_adjustment_action(data.get("action"), data.get("params"))
        result = adjustment_service.resolve_adjustment(
            order_id,
            action,
            original_amount_cents=data.get("original_amount_cents"),
            new_amount_cents=data.get("new_amount_cents"),
            reason=data.get("reason"),
            processed_by=data.get("processed_by"),
        )
        status = 202 if result.reconciliation_pending else 201
        return jsonify(result.to_dict()), status

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to resolve adjustment")
        return jsonify({"error": "Internal server error"}), 500


@adjustments_bp.post("/adjustments/<int:adjustment_id>/fulfill")
def fulfill_payment_link_route(adjustment_id: int):
    """
    Pay a pending payment-link adjustment.

    Request body: {"payment_method": {...}, "billing": {...}, "processed_by": ...}
    """
    try:
        data = request.get_json(silent=True) or {}
        result = adjustment_service.fulfill_payment_link(
            adjustment_id,
            data.get("payment_method"),
            billing=data.get("billing"),
            processed_by=data.get("processed_by"),
        )
        status = 202 if result["receipt"]["reconciliation_pending"] else 201
        return jsonify(result), status

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to fulfill payment link")
        return jsonify({"error": "Internal server error"}), 500
