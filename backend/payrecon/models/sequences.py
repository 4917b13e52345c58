from __future__ import annotations

from ..extensions import db
from payrecon.time_utils import to_utc_z


class SequenceCounter(db.Model):
    """
    Atomic per-prefix number counter (invoices, orders, adjustments, memos).

    WHY: "read max then increment" hands the same number to two concurrent
    checkouts. The allocator only ever moves next_number with a
    compare-and-swap UPDATE on this row.
    """
    __tablename__ = "sequence_counters"
    __table_args__ = (
        db.UniqueConstraint("prefix", name="uq_sequence_counters_prefix"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    prefix = db.Column(db.String(16), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "prefix": self.prefix,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
