# Overview: Order activity timeline; append-only entries describing payments, invoices and adjustments.

from __future__ import annotations

from typing import Optional

from ..extensions import db
from ..models import OrderActivity
from payrecon.time_utils import cents_to_amount
"""
Order Activity Invariants

- Append-only: entries are never updated or deleted.
- No business logic here; callers decide what happened and say so.
- Written after the financial transaction committed, so a failure here
  never undoes money movement (callers treat it as best-effort).
"""

PAYMENT_RECEIVED = "payment_received"
INVOICE_CREATED = "invoice_created"
ADJUSTMENT = "payment_adjustment"
REFUND_PROCESSED = "refund_processed"
ORDER_CREATED = "order_created"
ORDER_UPDATED = "order_updated"
ORDER_VOIDED = "order_voided"


def append_activity(
    *,
    order_id: int,
    activity_type: str,
    description: str,
    performed_by: Optional[str] = None,
    payload: Optional[dict] = None,
) -> OrderActivity:
    entry = OrderActivity(
        order_id=order_id,
        activity_type=activity_type,
        description=description,
        performed_by=performed_by,
        payload=payload,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def list_activity(order_id: int) -> list[OrderActivity]:
    return (
        db.session.query(OrderActivity)
        .filter_by(order_id=order_id)
        .order_by(OrderActivity.created_at.asc(), OrderActivity.id.asc())
        .all()
    )


def dollars(cents: int) -> str:
    """$12.34, for activity descriptions."""
    return f"${cents_to_amount(cents)}"


_METHOD_LABELS = {
    "card": "Credit Card",
    "ach": "ACH",
    "saved_card": "Saved Card",
    "manual": "Manual Payment",
    "credit": "Account Credit",
    "payment_link": "Payment Link",
    "credit_memo": "Credit Memo",
}


def method_label(method: str | None) -> str:
    return _METHOD_LABELS.get(method or "", method or "unknown")
