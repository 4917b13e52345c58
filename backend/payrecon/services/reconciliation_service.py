# Overview: Gateway attempt log and the reconciliation queue for money the ledger could not record.

"""
Reconciliation

WHY: Once the gateway has moved money, the only wrong answer is to forget
it. Two things protect against that:

GATEWAY ATTEMPTS
- A 'pending' attempt row is committed before every money-moving gateway
  call and finished afterwards (captured / declined / failed / unknown).
- While an attempt on an order is pending or unknown, no new gateway call
  is made on that order (CaptureOutcomeUnknown). An operator resolves the
  attempt after checking the gateway's own records.

RECONCILIATION ITEMS
- ledger_write_failed: the gateway succeeded but the grouped ledger
  writes could not be committed.
- outcome_unknown: the gateway call timed out or broke mid-flight.
Items are opened automatically and closed by an operator; never deleted.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import CaptureOutcomeUnknown, NotFoundError, ValidationError
from ..models import GatewayAttempt, ReconciliationItem
from payrecon.time_utils import utcnow


KIND_LEDGER_WRITE_FAILED = "ledger_write_failed"
KIND_OUTCOME_UNKNOWN = "outcome_unknown"

ATTEMPT_PENDING = "pending"
ATTEMPT_CAPTURED = "captured"
ATTEMPT_DECLINED = "declined"
ATTEMPT_FAILED = "failed"
ATTEMPT_UNKNOWN = "unknown"

BLOCKING_ATTEMPT_STATUSES = (ATTEMPT_PENDING, ATTEMPT_UNKNOWN)


# =============================================================================
# GATEWAY ATTEMPTS
# =============================================================================

def find_blocking_attempt(order_id: int) -> GatewayAttempt | None:
    return (
        db.session.query(GatewayAttempt)
        .filter(
            GatewayAttempt.order_id == order_id,
            GatewayAttempt.status.in_(BLOCKING_ATTEMPT_STATUSES),
        )
        .order_by(GatewayAttempt.id.asc())
        .first()
    )


def ensure_no_blocking_attempt(order_id: int) -> None:
    attempt = find_blocking_attempt(order_id)
    if attempt is not None:
        raise CaptureOutcomeUnknown(
            "A previous payment attempt on this order has an unknown outcome; "
            "resolve it before charging again",
            details={"gateway_attempt_id": attempt.id, "status": attempt.status},
        )


def start_attempt(
    *,
    order_id: int,
    attempt_type: str,
    method: str,
    amount_cents: int,
    context: dict | None = None,
) -> GatewayAttempt:
    """
    Record and commit a pending attempt before the gateway is called.

    context holds what the caller would write on success, so an operator
    confirming an unknown outcome can replay the same rows.
    """
    attempt = GatewayAttempt(
        order_id=order_id,
        attempt_type=attempt_type,
        method=method,
        amount_cents=amount_cents,
        status=ATTEMPT_PENDING,
        context=context,
    )
    db.session.add(attempt)
    db.session.commit()
    return attempt


def finish_attempt(
    attempt: GatewayAttempt,
    status: str,
    *,
    gateway_transaction_id: str | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
) -> GatewayAttempt:
    attempt.status = status
    attempt.gateway_transaction_id = gateway_transaction_id
    attempt.error_code = error_code
    attempt.error_message = (error_message or "")[:500] or None
    if status not in BLOCKING_ATTEMPT_STATUSES:
        attempt.resolved_at = utcnow()
    db.session.commit()
    return attempt


def list_attempts(order_id: int) -> list[GatewayAttempt]:
    return (
        db.session.query(GatewayAttempt)
        .filter_by(order_id=order_id)
        .order_by(GatewayAttempt.id.asc())
        .all()
    )


def _record_confirmed(attempt: GatewayAttempt, gateway_transaction_id: str, *, auth_code, resolved_by) -> None:
    from .adjustment_service import record_confirmed_adjustment
    from .capture_service import record_confirmed_capture

    try:
        if (attempt.context or {}).get("action"):
            record_confirmed_adjustment(
                attempt, gateway_transaction_id, auth_code=auth_code, processed_by=resolved_by,
            )
        elif attempt.attempt_type == "refund":
            raise ValidationError(
                "Refund attempt has no recorded context; record the refund by hand",
                details={"gateway_attempt_id": attempt.id},
            )
        else:
            record_confirmed_capture(
                attempt, gateway_transaction_id, auth_code=auth_code, processed_by=resolved_by,
            )
    except Exception:
        db.session.rollback()
        raise


def resolve_gateway_attempt(
    attempt_id: int,
    outcome: str,
    *,
    note: str,
    resolved_by: str | None = None,
    gateway_transaction_id: str | None = None,
    auth_code: str | None = None,
) -> GatewayAttempt:
    """
    Close a pending/unknown attempt after checking the gateway by hand.

    outcome:
    - "captured": the money did move; the rows the original call would have
      written (payment, refund or adjustment) are written now, then the
      order is unblocked.
    - "failed": nothing moved; the order is simply unblocked.

    Open items on the attempt are closed only after those rows commit; if
    the write fails the attempt stays unresolved and the error propagates.
    """
    if outcome not in (ATTEMPT_CAPTURED, ATTEMPT_FAILED):
        raise ValidationError("outcome must be 'captured' or 'failed'")
    if not (note or "").strip():
        raise ValidationError("A resolution note is required")

    attempt = db.session.query(GatewayAttempt).filter_by(id=attempt_id).first()
    if attempt is None:
        raise NotFoundError(f"Gateway attempt {attempt_id} not found")
    if attempt.status not in BLOCKING_ATTEMPT_STATUSES:
        raise ValidationError(f"Gateway attempt {attempt_id} is already {attempt.status}")

    if outcome == ATTEMPT_CAPTURED:
        if not gateway_transaction_id:
            raise ValidationError("gateway_transaction_id is required when the attempt captured")
        _record_confirmed(attempt, gateway_transaction_id, auth_code=auth_code, resolved_by=resolved_by)

    attempt.status = outcome
    attempt.gateway_transaction_id = gateway_transaction_id or attempt.gateway_transaction_id
    attempt.resolved_at = utcnow()
    attempt.resolution_note = note.strip()[:500]

    open_items = (
        db.session.query(ReconciliationItem)
        .filter_by(gateway_attempt_id=attempt.id, status="open")
        .all()
    )
    for item in open_items:
        _close(item, f"Attempt resolved as {outcome}: {note.strip()}", resolved_by)

    db.session.commit()
    current_app.logger.info(
        "Gateway attempt %s on order %s resolved as %s by %s",
        attempt.id, attempt.order_id, outcome, resolved_by,
    )
    return attempt


# =============================================================================
# RECONCILIATION ITEMS
# =============================================================================

def open_item(
    kind: str,
    *,
    amount_cents: int,
    order_id: int | None = None,
    gateway_attempt_id: int | None = None,
    gateway_transaction_id: str | None = None,
    payload: dict | None = None,
    error: str | None = None,
) -> ReconciliationItem:
    """Queue an item for a human and commit it on its own."""
    item = ReconciliationItem(
        kind=kind,
        order_id=order_id,
        gateway_attempt_id=gateway_attempt_id,
        amount_cents=amount_cents,
        gateway_transaction_id=gateway_transaction_id,
        payload=payload,
        error=error,
        status="open",
    )
    db.session.add(item)
    db.session.commit()
    current_app.logger.error(
        "Reconciliation item %s opened (%s) for order %s, amount_cents=%s, gateway_txn=%s",
        item.id, kind, order_id, amount_cents, gateway_transaction_id,
    )
    return item


def list_items(*, status: str | None = "open", kind: str | None = None) -> list[ReconciliationItem]:
    query = db.session.query(ReconciliationItem)
    if status:
        query = query.filter_by(status=status)
    if kind:
        query = query.filter_by(kind=kind)
    return query.order_by(ReconciliationItem.id.asc()).all()


def _close(item: ReconciliationItem, note: str, resolved_by: str | None) -> None:
    item.status = "resolved"
    item.resolution_note = note[:500]
    item.resolved_by = resolved_by
    item.resolved_at = utcnow()


def resolve_item(item_id: int, *, note: str, resolved_by: str | None = None) -> ReconciliationItem:
    if not (note or "").strip():
        raise ValidationError("A resolution note is required")

    item = db.session.query(ReconciliationItem).filter_by(id=item_id).first()
    if item is None:
        raise NotFoundError(f"Reconciliation item {item_id} not found")
    if item.status == "resolved":
        raise ValidationError(f"Reconciliation item {item_id} is already resolved")

    _close(item, note.strip(), resolved_by)
    db.session.commit()
    return item
