# backend/payrecon/routes/system.py
"""
System health endpoint.

Reports database reachability, gateway configuration and the size of the
open reconciliation queue (money that needs a human).
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Order, ReconciliationItem, GatewayAttempt
from payrecon.services.gateway_client import get_gateway
from payrecon.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def _elapsed_ms(started: float) -> float:
    return round((time.time() - started) * 1000, 2)


def check_database_health() -> dict:
    started = time.time()
    try:
        order_count = db.session.query(Order).count()
    except Exception:
        current_app.logger.exception("Database health check failed")
        return {"status": "unhealthy", "latency_ms": _elapsed_ms(started), "error": "Database error"}
    return {"status": "healthy", "latency_ms": _elapsed_ms(started), "details": {"orders": order_count}}


def check_gateway_health() -> dict:
    """Configuration only; the gateway is never called from a health check."""
    client = get_gateway()
    if client.configured:
        return {"status": "healthy"}
    return {
        "status": "degraded",
        "warning": "Payment gateway disabled or missing credentials",
    }


def check_reconciliation_health() -> dict:
    try:
        open_items = db.session.query(ReconciliationItem).filter_by(status="open").count()
        unresolved_attempts = (
            db.session.query(GatewayAttempt)
            .filter(GatewayAttempt.status.in_(("pending", "unknown")))
            .count()
        )
    except Exception:
        current_app.logger.exception("Reconciliation health check failed")
        return {"status": "unhealthy", "error": "Reconciliation queue error"}

    details = {"open_items": open_items, "unresolved_attempts": unresolved_attempts}
    if open_items or unresolved_attempts:
        return {"status": "degraded", "warning": "Reconciliation items need attention", "details": details}
    return {"status": "healthy", "details": details}


# Worst check wins; degraded still serves traffic
_STATUS_RANK = {"healthy": 0, "degraded": 1, "unhealthy": 2}
_HTTP_STATUS = {"healthy": 200, "degraded": 200, "unhealthy": 503}


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy, or degraded (gateway off / reconciliation backlog)
    - 503: database unreachable
    """
    started = time.time()

    checks = {"database": check_database_health(), "gateway": check_gateway_health()}
    if checks["database"]["status"] == "healthy":
        checks["reconciliation"] = check_reconciliation_health()
    else:
        checks["reconciliation"] = {"status": "unhealthy", "error": "Database unavailable"}

    overall = max((check["status"] for check in checks.values()), key=_STATUS_RANK.__getitem__)

    return {
        "status": overall,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": _elapsed_ms(started),
        "checks": checks,
    }, _HTTP_STATUS[overall]
