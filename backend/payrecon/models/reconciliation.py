from __future__ import annotations

from ..extensions import db
from payrecon.time_utils import to_utc_z


class ReconciliationItem(db.Model):
    """
    Internal report of money whose ledger state needs a human.

    KINDS:
    - ledger_write_failed: gateway captured/refunded but the grouped ledger
      writes could not be committed
    - outcome_unknown: gateway call timed out or broke mid-flight

    Items are opened by the capture/adjustment services and closed by an
    operator with a resolution note; they are never deleted.
    """
    __tablename__ = "reconciliation_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(32), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    gateway_attempt_id = db.Column(db.Integer, db.ForeignKey("gateway_attempts.id"), nullable=True, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    gateway_transaction_id = db.Column(db.String(64), nullable=True)

    payload = db.Column(db.JSON, nullable=True)
    error = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="open", index=True)
    resolution_note = db.Column(db.String(500), nullable=True)
    resolved_by = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "order_id": self.order_id,
            "gateway_attempt_id": self.gateway_attempt_id,
            "amount_cents": self.amount_cents,
            "gateway_transaction_id": self.gateway_transaction_id,
            "payload": self.payload,
            "error": self.error,
            "status": self.status,
            "resolution_note": self.resolution_note,
            "resolved_by": self.resolved_by,
            "created_at": to_utc_z(self.created_at),
            "resolved_at": to_utc_z(self.resolved_at),
        }
