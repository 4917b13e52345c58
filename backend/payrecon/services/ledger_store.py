# Overview: Ledger store; flush-only readers/writers for orders, invoices and the two money ledgers.

"""
Ledger Store

WHY: The capture orchestrator and the adjustment resolver both write the
same group of rows (payment transaction, order paid amount, invoice mirror,
account transaction). Keeping those writers here means both callers group
them the same way inside their own transaction.

Every writer only adds/flushes; the caller owns commit/rollback (and the
retry loop around it).
"""

from __future__ import annotations

from dataclasses import replace

from flask import current_app
from sqlalchemy import case, func

from ..extensions import db
from ..errors import NotFoundError, ValidationError
from ..models import (
    AccountTransaction,
    CreditMemo,
    Customer,
    Invoice,
    Order,
    PaymentTransaction,
)
from payrecon.time_utils import due_date_from
from .balance_service import (
    BalanceSummary,
    compute_subtotal,
    get_balance,
    recompute_status,
    snapshot_order,
)
from .concurrency import lock_for_update
from .sequence_service import allocate


# =============================================================================
# CONSTANTS
# =============================================================================

TXN_AUTH_CAPTURE = "auth_capture"
TXN_ADDITIONAL_PAYMENT = "additional_payment"
TXN_REFUND = "refund"
TXN_CREDIT_MEMO = "credit_memo"

ENTRY_CREDIT = "credit"
ENTRY_DEBIT = "debit"

REF_PAYMENT = "payment"
REF_REFUND = "refund"
REF_CREDIT_MEMO = "credit_memo"

MEMO_ISSUED = "issued"
MEMO_PARTIALLY_APPLIED = "partially_applied"
MEMO_APPLIED = "applied"
MEMO_SPENDABLE_STATUSES = (MEMO_ISSUED, MEMO_PARTIALLY_APPLIED)


def current_tolerance() -> int:
    return int(current_app.config.get("BALANCE_TOLERANCE_CENTS", 1))


def reconciled_balance(order: Order) -> BalanceSummary:
    """
    Balance against the stored (last reconciled) total.

    Line edits made after a payment are not collectable until the
    adjustment resolver has stored the new total.
    """
    snapshot = replace(snapshot_order(order), lines=())
    return get_balance(snapshot, current_tolerance())


# =============================================================================
# READERS
# =============================================================================

def get_order(order_id: int, *, lock: bool = False) -> Order:
    query = db.session.query(Order).filter_by(id=order_id)
    if lock:
        query = lock_for_update(query)
    order = query.first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def get_customer(customer_id: int, *, lock: bool = False) -> Customer:
    query = db.session.query(Customer).filter_by(id=customer_id)
    if lock:
        query = lock_for_update(query)
    customer = query.first()
    if customer is None:
        raise NotFoundError(f"Customer {customer_id} not found")
    return customer


def get_invoice_for_order(order_id: int, *, lock: bool = False) -> Invoice | None:
    query = db.session.query(Invoice).filter_by(order_id=order_id)
    if lock:
        query = lock_for_update(query)
    return query.first()


def get_credit_memo(memo_id: int, *, lock: bool = False) -> CreditMemo:
    query = db.session.query(CreditMemo).filter_by(id=memo_id)
    if lock:
        query = lock_for_update(query)
    memo = query.first()
    if memo is None:
        raise NotFoundError(f"Credit memo {memo_id} not found")
    return memo


def list_credit_memos(customer_id: int, *, spendable_only: bool = True) -> list[CreditMemo]:
    """Newest first; by default only memos with a balance left to spend."""
    query = db.session.query(CreditMemo).filter_by(customer_id=customer_id)
    if spendable_only:
        query = query.filter(
            CreditMemo.status.in_(MEMO_SPENDABLE_STATUSES),
            CreditMemo.balance_cents > 0,
        )
    return query.order_by(CreditMemo.id.desc()).all()


def original_transaction_id(order: Order) -> str | None:
    """Transaction id a refund is issued against: the order's, else the invoice's."""
    if order.gateway_transaction_id:
        return order.gateway_transaction_id
    invoice = get_invoice_for_order(order.id)
    if invoice is not None and invoice.transaction_reference:
        return invoice.transaction_reference
    return None


def list_payment_transactions(
    *,
    order_id: int | None = None,
    customer_id: int | None = None,
    limit: int = 100,
) -> list[PaymentTransaction]:
    query = db.session.query(PaymentTransaction)
    if order_id is not None:
        query = query.filter_by(order_id=order_id)
    if customer_id is not None:
        query = query.filter_by(customer_id=customer_id)
    return query.order_by(PaymentTransaction.id.desc()).limit(limit).all()


def list_account_transactions(customer_id: int, limit: int = 100) -> list[AccountTransaction]:
    return (
        db.session.query(AccountTransaction)
        .filter_by(customer_id=customer_id)
        .order_by(AccountTransaction.id.desc())
        .limit(limit)
        .all()
    )


def _signed_sum(*criteria) -> int:
    signed = case(
        (AccountTransaction.entry_type == ENTRY_CREDIT, AccountTransaction.amount_cents),
        else_=-AccountTransaction.amount_cents,
    )
    total = (
        db.session.query(func.coalesce(func.sum(signed), 0))
        .filter(*criteria)
        .scalar()
    )
    return int(total or 0)


def account_balance(customer_id: int) -> int:
    """SUM(credit) - SUM(debit) over all account transactions."""
    return _signed_sum(AccountTransaction.customer_id == customer_id)


def store_credit_balance(customer_id: int) -> int:
    """Account balance restricted to credit-memo entries."""
    return _signed_sum(
        AccountTransaction.customer_id == customer_id,
        AccountTransaction.reference_type == REF_CREDIT_MEMO,
    )


# =============================================================================
# WRITERS (flush only)
# =============================================================================

def record_payment_transaction(
    order: Order,
    *,
    transaction_type: str,
    amount_cents: int,
    method: str,
    gateway_transaction_id: str | None = None,
    auth_code: str | None = None,
    status: str = "completed",
    last_four: str | None = None,
    brand: str | None = None,
    invoice_id: int | None = None,
) -> PaymentTransaction:
    txn = PaymentTransaction(
        customer_id=order.customer_id,
        order_id=order.id,
        invoice_id=invoice_id,
        transaction_type=transaction_type,
        amount_cents=amount_cents,
        method=method,
        gateway_transaction_id=gateway_transaction_id,
        auth_code=auth_code,
        status=status,
        last_four=last_four,
        brand=brand,
    )
    db.session.add(txn)
    db.session.flush()
    return txn


def record_account_transaction(
    *,
    customer_id: int,
    order_id: int | None,
    entry_type: str,
    reference_type: str,
    amount_cents: int,
    description: str | None = None,
    processed_by: str | None = None,
    gateway_transaction_id: str | None = None,
) -> AccountTransaction:
    if entry_type not in (ENTRY_CREDIT, ENTRY_DEBIT):
        raise ValueError(f"Invalid entry type: {entry_type}")
    if amount_cents <= 0:
        raise ValueError("Account transaction amount must be positive")

    entry = AccountTransaction(
        customer_id=customer_id,
        order_id=order_id,
        entry_type=entry_type,
        reference_type=reference_type,
        amount_cents=amount_cents,
        description=description,
        processed_by=processed_by,
        gateway_transaction_id=gateway_transaction_id,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def apply_paid_delta(
    order: Order,
    delta_cents: int,
    *,
    new_total_cents: int | None = None,
) -> str:
    """
    Move paid_amount by delta (negative for refunds), store the total and
    re-derive payment_status. Returns the new status.

    The order row must already be locked by the caller; the version_id
    check on flush catches anyone who slipped past the lock.
    """
    new_paid = (order.paid_amount_cents or 0) + delta_cents
    if new_paid < 0:
        raise ValidationError(
            "Paid amount cannot go below zero",
            details={"paid_amount_cents": order.paid_amount_cents, "delta_cents": delta_cents},
        )

    if new_total_cents is not None:
        order.total_amount_cents = new_total_cents

    order.paid_amount_cents = new_paid
    order.payment_status = recompute_status(
        order.total_amount_cents,
        new_paid,
        current_tolerance(),
        previous_status=order.payment_status,
    )
    db.session.flush()
    return order.payment_status


def upsert_invoice(
    order: Order,
    *,
    payment_method: str | None,
    transaction_reference: str | None,
) -> tuple[Invoice, bool]:
    """
    Create the order's invoice on its first payment, or update it in place.

    On creation the amounts are snapshotted from the order and a number is
    allocated inside the caller's transaction. Later calls only mirror
    paid amount, status, method and reference.

    Returns (invoice, created).
    """
    invoice = get_invoice_for_order(order.id, lock=True)
    if invoice is None:
        snapshot = snapshot_order(order)
        invoice = Invoice(
            invoice_number=allocate(current_app.config["INVOICE_PREFIX"]),
            order_id=order.id,
            customer_id=order.customer_id,
            due_date=due_date_from(order.estimated_delivery, int(current_app.config.get("INVOICE_DUE_DAYS", 30))),
            amount_cents=compute_subtotal(snapshot.lines) if snapshot.lines else order.total_amount_cents,
            tax_amount_cents=order.tax_amount_cents or 0,
            shipping_cost_cents=order.shipping_cost_cents or 0,
            total_amount_cents=order.total_amount_cents,
            paid_amount_cents=order.paid_amount_cents,
            payment_status=order.payment_status,
            payment_method=payment_method,
            transaction_reference=transaction_reference,
        )
        db.session.add(invoice)
        db.session.flush()
        return invoice, True

    invoice.paid_amount_cents = order.paid_amount_cents
    invoice.payment_status = order.payment_status
    if payment_method:
        invoice.payment_method = payment_method
    if transaction_reference:
        invoice.transaction_reference = transaction_reference
    db.session.flush()
    return invoice, False


def mirror_invoice(order: Order) -> Invoice | None:
    """Copy paid amount/status onto an existing invoice (adjustments)."""
    invoice = get_invoice_for_order(order.id, lock=True)
    if invoice is None:
        return None
    invoice.paid_amount_cents = order.paid_amount_cents
    invoice.payment_status = order.payment_status
    db.session.flush()
    return invoice
