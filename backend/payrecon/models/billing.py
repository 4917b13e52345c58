from __future__ import annotations

from ..extensions import db
from payrecon.time_utils import to_utc_z


class Invoice(db.Model):
    """
    Invoice for an order (1:1).

    WHY: Created lazily by the first successful payment on the order; every
    later payment updates this row in place. The amount/tax/total columns
    are a snapshot taken at creation time and are never recomputed.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_invoices_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(64), nullable=False, unique=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    due_date = db.Column(db.DateTime(timezone=True), nullable=False)

    # Snapshot at creation
    amount_cents = db.Column(db.Integer, nullable=False)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    shipping_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False)

    # Mirrors of the order, updated on every payment
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    payment_status = db.Column(db.String(16), nullable=False, default="unpaid", index=True)
    payment_method = db.Column(db.String(32), nullable=True)
    transaction_reference = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("invoice", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "due_date": to_utc_z(self.due_date),
            "amount_cents": self.amount_cents,
            "tax_amount_cents": self.tax_amount_cents,
            "shipping_cost_cents": self.shipping_cost_cents,
            "total_amount_cents": self.total_amount_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "transaction_reference": self.transaction_reference,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class PaymentTransaction(db.Model):
    """
    Append-only ledger of money movements at the gateway (or manual receipts).

    TRANSACTION TYPES:
    - auth_capture: checkout payment
    - additional_payment: collected after the order total went up
    - refund: money returned after the order total went down

    IMMUTABLE: Records are never updated or deleted. Card/account numbers
    are stored masked (last four + brand) only.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.Index("ix_payment_txns_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)

    transaction_type = db.Column(db.String(32), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(32), nullable=False)

    gateway_transaction_id = db.Column(db.String(64), nullable=True, index=True)
    auth_code = db.Column(db.String(32), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="completed", index=True)

    last_four = db.Column(db.String(4), nullable=True)
    brand = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "order_id": self.order_id,
            "invoice_id": self.invoice_id,
            "transaction_type": self.transaction_type,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "gateway_transaction_id": self.gateway_transaction_id,
            "auth_code": self.auth_code,
            "status": self.status,
            "last_four": self.last_four,
            "brand": self.brand,
            "created_at": to_utc_z(self.created_at),
        }


class AccountTransaction(db.Model):
    """
    Append-only customer account ledger.

    Account balance is SUM(credit) - SUM(debit); the store-credit balance is
    the same sum restricted to reference_type='credit_memo'.
    """
    __tablename__ = "account_transactions"
    __table_args__ = (
        db.Index("ix_account_txns_customer_created", "customer_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    entry_type = db.Column(db.String(8), nullable=False)  # credit, debit
    reference_type = db.Column(db.String(32), nullable=False, index=True)  # payment, refund, credit_memo
    amount_cents = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255), nullable=True)

    processed_by = db.Column(db.String(255), nullable=True)
    gateway_transaction_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "order_id": self.order_id,
            "entry_type": self.entry_type,
            "reference_type": self.reference_type,
            "amount_cents": self.amount_cents,
            "description": self.description,
            "processed_by": self.processed_by,
            "gateway_transaction_id": self.gateway_transaction_id,
            "created_at": to_utc_z(self.created_at),
        }


class CreditMemo(db.Model):
    """Store credit granted in lieu of a cash refund."""
    __tablename__ = "credit_memos"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    memo_number = db.Column(db.String(64), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    balance_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(24), nullable=False, default="issued")
    reason = db.Column(db.String(500), nullable=True)
    issued_by = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "memo_number": self.memo_number,
            "customer_id": self.customer_id,
            "order_id": self.order_id,
            "amount_cents": self.amount_cents,
            "balance_cents": self.balance_cents,
            "status": self.status,
            "reason": self.reason,
            "issued_by": self.issued_by,
            "created_at": to_utc_z(self.created_at),
        }


class Adjustment(db.Model):
    """
    One reconciliation event on an order whose total changed after payment.

    difference_amount_cents is signed: positive means the customer owes
    more. Rows are immutable; a fulfilled payment link is recorded as a new
    completed row pointing at the pending one (fulfills_adjustment_id).
    """
    __tablename__ = "adjustments"
    __table_args__ = (
        db.Index("ix_adjustments_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    adjustment_number = db.Column(db.String(64), nullable=False, unique=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    adjustment_type = db.Column(db.String(32), nullable=False, index=True)
    original_amount_cents = db.Column(db.Integer, nullable=False)
    new_amount_cents = db.Column(db.Integer, nullable=False)
    difference_amount_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(32), nullable=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    credit_memo_id = db.Column(db.Integer, db.ForeignKey("credit_memos.id"), nullable=True)
    refund_id = db.Column(db.String(64), nullable=True)
    payment_transaction_id = db.Column(db.Integer, db.ForeignKey("payment_transactions.id"), nullable=True)
    fulfills_adjustment_id = db.Column(db.Integer, db.ForeignKey("adjustments.id"), nullable=True, index=True)

    reason = db.Column(db.String(500), nullable=True)
    processed_by = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "adjustment_number": self.adjustment_number,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "adjustment_type": self.adjustment_type,
            "original_amount_cents": self.original_amount_cents,
            "new_amount_cents": self.new_amount_cents,
            "difference_amount_cents": self.difference_amount_cents,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "credit_memo_id": self.credit_memo_id,
            "refund_id": self.refund_id,
            "payment_transaction_id": self.payment_transaction_id,
            "fulfills_adjustment_id": self.fulfills_adjustment_id,
            "reason": self.reason,
            "processed_by": self.processed_by,
            "created_at": to_utc_z(self.created_at),
        }


class GatewayAttempt(db.Model):
    """
    One row per call that can move money at the gateway.

    Written as 'pending' and committed *before* the gateway is called, then
    moved to captured / declined / failed / unknown. A pending or unknown
    attempt blocks further gateway calls on the same order until resolved.
    """
    __tablename__ = "gateway_attempts"
    __table_args__ = (
        db.Index("ix_gateway_attempts_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    attempt_type = db.Column(db.String(32), nullable=False)  # capture, additional_payment, refund
    method = db.Column(db.String(32), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    gateway_transaction_id = db.Column(db.String(64), nullable=True)
    error_code = db.Column(db.String(32), nullable=True)
    error_message = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_note = db.Column(db.String(500), nullable=True)

    # What to write if an unknown attempt is later confirmed as captured
    context = db.Column(db.JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "attempt_type": self.attempt_type,
            "method": self.method,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "gateway_transaction_id": self.gateway_transaction_id,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "created_at": to_utc_z(self.created_at),
            "resolved_at": to_utc_z(self.resolved_at),
            "resolution_note": self.resolution_note,
            "context": self.context,
        }
