# Overview: Flask API routes for the reconciliation report and resolving unknown gateway attempts.

from flask import Blueprint, request, jsonify, current_app

from ..errors import PaymentError
from ..services import reconciliation_service


reconciliation_bp = Blueprint("reconciliation", __name__, url_prefix="/api/reconciliation")


@reconciliation_bp.get("")
def list_items_route():
    """
    Query params:
    - status: open (default), resolved, all
    - kind: ledger_write_failed, outcome_unknown
    """
    try:
        status = request.args.get("status", "open")
        items = reconciliation_service.list_items(
            status=None if status == "all" else status,
            kind=request.args.get("kind"),
        )
        return jsonify({"items": [i.to_dict() for i in items]}), 200

    except Exception:
        current_app.logger.exception("Failed to list reconciliation items")
        return jsonify({"error": "Internal server error"}), 500


@reconciliation_bp.post("/<int:item_id>/resolve")
def resolve_item_route(item_id: int):
    """Request body: {"note": "...", "resolved_by": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        item = reconciliation_service.resolve_item(
            item_id,
            note=data.get("note") or "",
            resolved_by=data.get("resolved_by"),
        )
        return jsonify({"item": item.to_dict()}), 200

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to resolve reconciliation item")
        return jsonify({"error": "Internal server error"}), 500


@reconciliation_bp.post("/attempts/<int:attempt_id>/resolve")
def resolve_attempt_route(attempt_id: int):
    """
    Close a pending/unknown gateway attempt after checking the gateway.

    Request body:
    {
        "outcome": "captured" | "failed",
        "note": "Checked merchant portal",
        "gateway_transaction_id": "60123456789",   (required when captured)
        "auth_code": "ABC123",                     (optional)
        "resolved_by": "ops@example.com"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        attempt = reconciliation_service.resolve_gateway_attempt(
            attempt_id,
            data.get("outcome") or "",
            note=data.get("note") or "",
            resolved_by=data.get("resolved_by"),
            gateway_transaction_id=data.get("gateway_transaction_id"),
            auth_code=data.get("auth_code"),
        )
        return jsonify({"attempt": attempt.to_dict()}), 200

    except PaymentError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to resolve gateway attempt")
        return jsonify({"error": "Internal server error"}), 500
