# Overview: Payment capture orchestrator; gateway capture, grouped ledger writes, invoice, side effects.

"""
Payment Capture Orchestrator

WHY: A checkout touches the gateway, four ledger tables and inventory. The
gateway call cannot be rolled back, so the order of operations decides what
a failure leaves behind.

SEQUENCE:
1. Validate input (no side effects): amount, order, balance due, payment
   method + billing, gateway configuration.
2. Refuse if an earlier gateway attempt on the order is pending/unknown
   (every method, manual included). Commit a pending GatewayAttempt, then
   call the gateway (manual payments skip the call).
   - decline  -> attempt 'declined', PaymentDeclined raised, no ledger rows
   - timeout  -> attempt 'unknown', reconciliation item, GatewayTimeout
   - refused  -> attempt 'failed', GatewayUnavailable
3. ONE transaction (retried on lock/version conflicts): payment
   transaction, order paid amount + status, invoice create/update (number
   allocated inside), account transaction credit, attempt 'captured'.
4. If 3 cannot commit: the payment transaction alone is written as the
   audit-of-record and a reconciliation item is queued. The receipt says
   reconciliation_pending; the payment is NOT reported as failed. If even
   that write fails, LedgerWriteFailure is raised and logged as critical.
5. Best-effort: stock decrement, activity log, notifications. Failures are
   logged and never undo 3.

There is no deduplication of successful captures; callers must not repeat
a capture that returned a receipt.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from flask import current_app

from ..extensions import db
from ..errors import (
    GatewayError,
    GatewayTimeout,
    LedgerWriteFailure,
    PaymentDeclined,
    ValidationError,
)
from ..models import GatewayAttempt, SavedPaymentMethod
from payrecon.time_utils import utcnow
from .activity_service import (
    INVOICE_CREATED,
    PAYMENT_RECEIVED,
    append_activity,
    dollars,
    method_label,
)
from .balance_service import STATUS_PAID
from .concurrency import run_with_retry
from .gateway_client import get_gateway
from .inventory_service import decrement_for_order, oversold_sizes
from .ledger_store import (
    ENTRY_CREDIT,
    ENTRY_DEBIT,
    MEMO_APPLIED,
    MEMO_PARTIALLY_APPLIED,
    MEMO_SPENDABLE_STATUSES,
    REF_CREDIT_MEMO,
    REF_PAYMENT,
    TXN_ADDITIONAL_PAYMENT,
    TXN_AUTH_CAPTURE,
    TXN_CREDIT_MEMO,
    current_tolerance,
    reconciled_balance,
    get_credit_memo,
    get_order,
    record_account_transaction,
    record_payment_transaction,
    upsert_invoice,
    apply_paid_delta,
)
from . import notification_service
from .order_service import create_order
from .payment_methods import (
    BillingAddress,
    SavedCardPayment,
    parse_payment_method,
    validate_payment_method,
)
from .reconciliation_service import (
    ATTEMPT_CAPTURED,
    ATTEMPT_DECLINED,
    ATTEMPT_FAILED,
    ATTEMPT_UNKNOWN,
    KIND_LEDGER_WRITE_FAILED,
    KIND_OUTCOME_UNKNOWN,
    ensure_no_blocking_attempt,
    finish_attempt,
    open_item,
    start_attempt,
)


ATTEMPT_TYPES = {
    TXN_AUTH_CAPTURE: "capture",
    TXN_ADDITIONAL_PAYMENT: "additional_payment",
}


@dataclass
class Receipt:
    order_id: int
    order_number: str
    amount_cents: int
    method: str
    transaction_type: str
    payment_transaction_id: int | None
    gateway_transaction_id: str | None
    auth_code: str | None = None
    invoice_id: int | None = None
    invoice_number: str | None = None
    invoice_created: bool = False
    payment_status: str | None = None
    paid_amount_cents: int | None = None
    balance_due_cents: int | None = None
    reconciliation_pending: bool = False
    reconciliation_item_id: int | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "transaction_type": self.transaction_type,
            "payment_transaction_id": self.payment_transaction_id,
            "gateway_transaction_id": self.gateway_transaction_id,
            "auth_code": self.auth_code,
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "invoice_created": self.invoice_created,
            "payment_status": self.payment_status,
            "paid_amount_cents": self.paid_amount_cents,
            "balance_due_cents": self.balance_due_cents,
            "reconciliation_pending": self.reconciliation_pending,
            "reconciliation_item_id": self.reconciliation_item_id,
            "warnings": list(self.warnings),
        }


# =============================================================================
# VALIDATION
# =============================================================================

def _coerce_method(payment_method):
    if isinstance(payment_method, dict) or payment_method is None:
        return parse_payment_method(payment_method)
    return payment_method


def _coerce_billing(billing) -> BillingAddress | None:
    if billing is None or isinstance(billing, BillingAddress):
        return billing
    if isinstance(billing, dict):
        return BillingAddress.from_dict(billing)
    raise ValidationError("billing must be an object")


def _validate_amount(amount_cents) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError("amount_cents must be an integer")
    if amount_cents <= 0:
        raise ValidationError("Amount must be positive")
    return amount_cents


def resolve_saved_method(method: SavedCardPayment, customer_id: int) -> SavedCardPayment:
    """Fill a parsed saved-card reference with the stored gateway profile."""
    saved = (
        db.session.query(SavedPaymentMethod)
        .filter_by(id=method.saved_method_id, customer_id=customer_id, is_active=True)
        .first()
    )
    if saved is None:
        raise ValidationError(
            "Saved payment method not found for this customer",
            details={"saved_method_id": method.saved_method_id},
        )
    return replace(
        method,
        customer_profile_id=saved.customer_profile_id,
        payment_profile_id=saved.payment_profile_id,
        card_last_four=saved.card_last_four,
        card_brand=saved.card_brand,
    )


# =============================================================================
# GATEWAY STEP
# =============================================================================

def _call_gateway(order, method, billing, amount_cents: int, attempt: GatewayAttempt, invoice_number: str | None):
    gateway = get_gateway()
    try:
        if isinstance(method, SavedCardPayment):
            result = gateway.charge_saved_method(
                method,
                amount_cents,
                invoice_number=invoice_number,
                order_reference=order.order_number,
            )
        else:
            result = gateway.authorize_capture(
                method,
                amount_cents,
                billing,
                invoice_number=invoice_number,
                order_reference=order.order_number,
                customer_email=order.customer.email if order.customer else None,
            )
    except GatewayError as exc:
        if isinstance(exc, GatewayTimeout) or exc.outcome_unknown:
            finish_attempt(attempt, ATTEMPT_UNKNOWN, error_message=exc.message)
            open_item(
                KIND_OUTCOME_UNKNOWN,
                order_id=order.id,
                gateway_attempt_id=attempt.id,
                amount_cents=amount_cents,
                payload={"method": method.kind, "attempt_type": attempt.attempt_type},
                error=exc.message,
            )
        else:
            finish_attempt(attempt, ATTEMPT_FAILED, error_message=exc.message)
        raise

    if not result.success:
        finish_attempt(
            attempt,
            ATTEMPT_DECLINED,
            error_code=result.error_code,
            error_message=result.error,
        )
        raise PaymentDeclined(
            result.error_code,
            result.error or "Payment declined",
            details={"order_id": order.id, "gateway_attempt_id": attempt.id},
        )
    return result


# =============================================================================
# LEDGER STEP
# =============================================================================

def _record_capture(
    *,
    order_id: int,
    amount_cents: int,
    method_kind: str,
    transaction_type: str,
    gateway_transaction_id: str | None,
    auth_code: str | None,
    last_four: str | None,
    brand: str | None,
    attempt_id: int | None,
    processed_by: str | None,
) -> dict:
    """Grouped ledger writes for one captured amount. Commits."""
    def _op():
        order = get_order(order_id, lock=True)
        was_unpaid = (order.paid_amount_cents or 0) == 0

        txn = record_payment_transaction(
            order,
            transaction_type=transaction_type,
            amount_cents=amount_cents,
            method=method_kind,
            gateway_transaction_id=gateway_transaction_id,
            auth_code=auth_code,
            status="completed",
            last_four=last_four,
            brand=brand,
        )
        status = apply_paid_delta(order, amount_cents)
        if gateway_transaction_id and not order.gateway_transaction_id:
            order.gateway_transaction_id = gateway_transaction_id

        invoice, created = upsert_invoice(
            order,
            payment_method=method_kind,
            transaction_reference=gateway_transaction_id,
        )
        txn.invoice_id = invoice.id

        record_account_transaction(
            customer_id=order.customer_id,
            order_id=order.id,
            entry_type=ENTRY_CREDIT,
            reference_type=REF_PAYMENT,
            amount_cents=amount_cents,
            description=f"Payment for order {order.order_number}",
            processed_by=processed_by,
            gateway_transaction_id=gateway_transaction_id,
        )

        if attempt_id is not None:
            attempt = db.session.query(GatewayAttempt).filter_by(id=attempt_id).first()
            if attempt is not None and attempt.status != ATTEMPT_CAPTURED:
                attempt.status = ATTEMPT_CAPTURED
                attempt.gateway_transaction_id = gateway_transaction_id
                attempt.resolved_at = utcnow()

        db.session.commit()
        return {
            "payment_transaction_id": txn.id,
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "invoice_created": created,
            "payment_status": status,
            "paid_amount_cents": order.paid_amount_cents,
            "total_cents": order.total_amount_cents,
            "first_payment": was_unpaid,
        }

    return run_with_retry(_op)


def _record_audit_only(
    *,
    order_id: int,
    amount_cents: int,
    method_kind: str,
    transaction_type: str,
    gateway_transaction_id: str | None,
    auth_code: str | None,
    last_four: str | None,
    brand: str | None,
    attempt_id: int | None,
    error: Exception,
) -> tuple[int, int]:
    """
    Fallback when the grouped writes failed: the payment transaction alone
    plus a reconciliation item. Returns (payment_transaction_id, item_id).
    """
    order = get_order(order_id)
    txn = record_payment_transaction(
        order,
        transaction_type=transaction_type,
        amount_cents=amount_cents,
        method=method_kind,
        gateway_transaction_id=gateway_transaction_id,
        auth_code=auth_code,
        status="completed",
        last_four=last_four,
        brand=brand,
    )
    if attempt_id is not None:
        attempt = db.session.query(GatewayAttempt).filter_by(id=attempt_id).first()
        if attempt is not None:
            attempt.status = ATTEMPT_CAPTURED
            attempt.gateway_transaction_id = gateway_transaction_id
    db.session.commit()

    item = open_item(
        KIND_LEDGER_WRITE_FAILED,
        order_id=order_id,
        gateway_attempt_id=attempt_id,
        amount_cents=amount_cents,
        gateway_transaction_id=gateway_transaction_id,
        payload={
            "payment_transaction_id": txn.id,
            "transaction_type": transaction_type,
            "method": method_kind,
            "auth_code": auth_code,
            "missing": ["order_paid_amount", "invoice", "account_transaction"],
        },
        error=f"{error.__class__.__name__}: {error}",
    )
    return txn.id, item.id


def _record_with_fallback(**kwargs) -> tuple[dict | None, int | None, int | None]:
    """
    Returns (ledger_result, fallback_payment_transaction_id, reconciliation_item_id).
    Exactly one of ledger_result / fallback id is set.
    """
    try:
        return _record_capture(**kwargs), None, None
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Ledger writes failed after capture on order %s (gateway_txn=%s)",
            kwargs["order_id"], kwargs["gateway_transaction_id"],
        )
        audit_kwargs = {k: v for k, v in kwargs.items() if k != "processed_by"}
        try:
            txn_id, item_id = _record_audit_only(error=exc, **audit_kwargs)
        except Exception as audit_exc:
            db.session.rollback()
            current_app.logger.critical(
                "UNRECORDED PAYMENT: order_id=%s amount_cents=%s method=%s gateway_txn=%s auth_code=%s "
                "attempt_id=%s ledger_error=%r audit_error=%r",
                kwargs["order_id"], kwargs["amount_cents"], kwargs["method_kind"],
                kwargs["gateway_transaction_id"], kwargs["auth_code"], kwargs["attempt_id"],
                exc, audit_exc,
            )
            raise LedgerWriteFailure(
                "Payment received; recording is pending reconciliation",
                details={
                    "order_id": kwargs["order_id"],
                    "amount_cents": kwargs["amount_cents"],
                    "gateway_transaction_id": kwargs["gateway_transaction_id"],
                },
            ) from audit_exc
        return None, txn_id, item_id


# =============================================================================
# SIDE EFFECTS (best-effort)
# =============================================================================

def _after_capture(receipt: Receipt, *, first_payment: bool, processed_by: str | None) -> None:
    order_id = receipt.order_id

    if first_payment and receipt.transaction_type != TXN_ADDITIONAL_PAYMENT:
        try:
            order = get_order(order_id)
            decrement_for_order(order)
            db.session.commit()
            oversold = oversold_sizes(order)
            if oversold:
                receipt.warnings.append("stock_oversold")
                current_app.logger.warning("Order %s oversold product sizes %s", order_id, oversold)
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Stock decrement failed for order %s", order_id)
            receipt.warnings.append("stock_update_failed")

    try:
        if receipt.transaction_type == TXN_ADDITIONAL_PAYMENT:
            description = (
                f"Additional payment of {dollars(receipt.amount_cents)} collected via "
                f"{method_label(receipt.method)}"
            )
        else:
            description = f"Payment of {dollars(receipt.amount_cents)} received via {method_label(receipt.method)}"
        append_activity(
            order_id=order_id,
            activity_type=PAYMENT_RECEIVED,
            description=description,
            performed_by=processed_by,
            payload={
                "transaction_id": receipt.gateway_transaction_id,
                "auth_code": receipt.auth_code,
                "payment_type": receipt.method,
                "amount_cents": receipt.amount_cents,
            },
        )
        if receipt.invoice_created:
            append_activity(
                order_id=order_id,
                activity_type=INVOICE_CREATED,
                description=f"Invoice {receipt.invoice_number} created",
                performed_by=processed_by,
                payload={"invoice_id": receipt.invoice_id},
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Activity log failed for order %s", order_id)

    if receipt.payment_status == STATUS_PAID:
        notification_service.notify(
            notification_service.ORDER_PAID,
            {
                "order_id": order_id,
                "order_number": receipt.order_number,
                "amount_cents": receipt.amount_cents,
                "paid_amount_cents": receipt.paid_amount_cents,
            },
        )
    if receipt.invoice_created:
        notification_service.notify(
            notification_service.INVOICE_CREATED,
            {
                "order_id": order_id,
                "invoice_id": receipt.invoice_id,
                "invoice_number": receipt.invoice_number,
            },
        )


# =============================================================================
# PUBLIC API
# =============================================================================

def capture(
    order_id: int,
    payment_method,
    amount_cents: int,
    *,
    billing=None,
    processed_by: str | None = None,
    transaction_type: str = TXN_AUTH_CAPTURE,
    attempt_context: dict | None = None,
) -> Receipt:
    """
    Capture `amount_cents` against an order's balance due.

    payment_method is a PaymentMethod variant or its request dict; billing
    is a BillingAddress or dict (required for card and ACH). attempt_context
    is stored on the gateway attempt for callers that write more rows after
    the capture (payment links).

    Raises:
        ValidationError, NotFoundError, ConfigurationError: before any side effect
        CaptureOutcomeUnknown: an earlier attempt on the order is unresolved
        PaymentDeclined: the gateway declined; nothing recorded but the attempt
        GatewayTimeout / GatewayUnavailable: see outcome_unknown on the error
        LedgerWriteFailure: money moved, nothing could be recorded
    """
    if transaction_type not in ATTEMPT_TYPES:
        raise ValidationError(f"Invalid transaction type: {transaction_type}")

    method = _coerce_method(payment_method)
    billing = _coerce_billing(billing)
    amount_cents = _validate_amount(amount_cents)
    validate_payment_method(method, billing)

    order = get_order(order_id)
    if order.is_void:
        raise ValidationError("Cannot take payment on a void order")

    tolerance = current_tolerance()
    balance = reconciled_balance(order)
    if balance.due_cents <= 0:
        raise ValidationError("Order has no balance due", details={"balance": balance.to_dict()})
    if amount_cents > balance.due_cents + tolerance:
        raise ValidationError(
            "Amount exceeds balance due",
            details={"amount_cents": amount_cents, "due_cents": balance.due_cents},
        )

    if isinstance(method, SavedCardPayment):
        method = resolve_saved_method(method, order.customer_id)

    gateway_transaction_id = None
    auth_code = None
    attempt_id = None
    # An unresolved attempt may already have paid this balance
    ensure_no_blocking_attempt(order.id)
    if method.uses_gateway:
        get_gateway().ensure_configured()
        invoice = order.invoice
        attempt = start_attempt(
            order_id=order.id,
            attempt_type=ATTEMPT_TYPES[transaction_type],
            method=method.kind,
            amount_cents=amount_cents,
            context=attempt_context,
        )
        attempt_id = attempt.id
        result = _call_gateway(
            order, method, billing, amount_cents, attempt,
            invoice.invoice_number if invoice is not None else None,
        )
        gateway_transaction_id = result.transaction_id
        auth_code = result.auth_code
        current_app.logger.info(
            "Captured %s cents on order %s (gateway_txn=%s)",
            amount_cents, order.id, gateway_transaction_id,
        )

    order_number = order.order_number
    ledger, fallback_txn_id, item_id = _record_with_fallback(
        order_id=order_id,
        amount_cents=amount_cents,
        method_kind=method.kind,
        transaction_type=transaction_type,
        gateway_transaction_id=gateway_transaction_id,
        auth_code=auth_code,
        last_four=method.last_four,
        brand=method.brand,
        attempt_id=attempt_id,
        processed_by=processed_by,
    )

    if ledger is None:
        return Receipt(
            order_id=order_id,
            order_number=order_number,
            amount_cents=amount_cents,
            method=method.kind,
            transaction_type=transaction_type,
            payment_transaction_id=fallback_txn_id,
            gateway_transaction_id=gateway_transaction_id,
            auth_code=auth_code,
            reconciliation_pending=True,
            reconciliation_item_id=item_id,
        )

    receipt = Receipt(
        order_id=order_id,
        order_number=order_number,
        amount_cents=amount_cents,
        method=method.kind,
        transaction_type=transaction_type,
        payment_transaction_id=ledger["payment_transaction_id"],
        gateway_transaction_id=gateway_transaction_id,
        auth_code=auth_code,
        invoice_id=ledger["invoice_id"],
        invoice_number=ledger["invoice_number"],
        invoice_created=ledger["invoice_created"],
        payment_status=ledger["payment_status"],
        paid_amount_cents=ledger["paid_amount_cents"],
        balance_due_cents=max(0, ledger["total_cents"] - ledger["paid_amount_cents"]),
    )
    if receipt.balance_due_cents <= tolerance:
        receipt.balance_due_cents = 0

    _after_capture(receipt, first_payment=ledger["first_payment"], processed_by=processed_by)
    return receipt


def checkout(
    customer_id: int,
    lines_data,
    payment_method,
    amount_cents: int | None = None,
    *,
    billing=None,
    charges: dict | None = None,
    estimated_delivery: str | None = None,
    notes: str | None = None,
    processed_by: str | None = None,
) -> tuple[dict, Receipt]:
    """
    Create an order and capture payment on it.

    amount_cents defaults to the order total. The payment input is checked
    before the order is created; a declined capture leaves an unpaid order.
    Returns (order dict, receipt).
    """
    method = _coerce_method(payment_method)
    billing = _coerce_billing(billing)
    validate_payment_method(method, billing)
    if amount_cents is not None:
        _validate_amount(amount_cents)

    order = create_order(
        customer_id,
        lines_data,
        charges=charges,
        estimated_delivery=estimated_delivery,
        notes=notes,
        performed_by=processed_by,
    )
    amount = amount_cents if amount_cents is not None else order.total_amount_cents
    receipt = capture(order.id, method, amount, billing=billing, processed_by=processed_by)
    return get_order(order.id).to_dict(), receipt


def record_confirmed_capture(
    attempt: GatewayAttempt,
    gateway_transaction_id: str,
    *,
    auth_code: str | None = None,
    processed_by: str | None = None,
) -> dict:
    """
    Ledger writes for a capture attempt an operator confirmed as captured.

    The money already moved, so the rows are written even if the balance
    due has since shrunk; an overpayment is logged for follow-up. Payment
    link completions are written by the adjustment resolver on top of this.
    """
    context = attempt.context or {}
    transaction_type = TXN_ADDITIONAL_PAYMENT if attempt.attempt_type == "additional_payment" else TXN_AUTH_CAPTURE

    due = reconciled_balance(get_order(attempt.order_id)).due_cents
    if attempt.amount_cents > due + current_tolerance():
        current_app.logger.warning(
            "Confirmed attempt %s overpays order %s: amount_cents=%s due_cents=%s",
            attempt.id, attempt.order_id, attempt.amount_cents, due,
        )

    return _record_capture(
        order_id=attempt.order_id,
        amount_cents=attempt.amount_cents,
        method_kind=attempt.method,
        transaction_type=transaction_type,
        gateway_transaction_id=gateway_transaction_id,
        auth_code=auth_code,
        last_four=context.get("last_four"),
        brand=context.get("brand"),
        attempt_id=attempt.id,
        processed_by=processed_by,
    )


# =============================================================================
# STORE CREDIT
# =============================================================================

def apply_credit_memo(
    order_id: int,
    credit_memo_id: int,
    amount_cents: int | None = None,
    *,
    processed_by: str | None = None,
) -> Receipt:
    """
    Pay part of an order's balance due from one of the customer's credit memos.

    amount_cents defaults to the smaller of the memo balance and the balance
    due. In one transaction: memo balance/status, payment transaction
    (type credit_memo), order paid amount + status, invoice create/update,
    account debit against store credit. No gateway call.
    """
    if amount_cents is not None:
        amount_cents = _validate_amount(amount_cents)

    order = get_order(order_id)
    if order.is_void:
        raise ValidationError("Cannot take payment on a void order")
    ensure_no_blocking_attempt(order.id)
    tolerance = current_tolerance()

    def _op():
        locked = get_order(order_id, lock=True)
        memo = get_credit_memo(credit_memo_id, lock=True)
        if memo.customer_id != locked.customer_id:
            raise ValidationError(
                "Credit memo belongs to another customer",
                details={"credit_memo_id": memo.id},
            )
        if memo.status not in MEMO_SPENDABLE_STATUSES or memo.balance_cents <= 0:
            raise ValidationError(
                "Credit memo has no balance left",
                details={"credit_memo_id": memo.id, "status": memo.status},
            )

        due = reconciled_balance(locked).due_cents
        if due <= 0:
            raise ValidationError("Order has no balance due")
        amount = amount_cents if amount_cents is not None else min(memo.balance_cents, due)
        if amount > memo.balance_cents:
            raise ValidationError(
                "Amount exceeds the credit memo balance",
                details={"amount_cents": amount, "balance_cents": memo.balance_cents},
            )
        if amount > due + tolerance:
            raise ValidationError(
                "Amount exceeds balance due",
                details={"amount_cents": amount, "due_cents": due},
            )

        was_unpaid = (locked.paid_amount_cents or 0) == 0
        memo.balance_cents -= amount
        memo.status = MEMO_APPLIED if memo.balance_cents == 0 else MEMO_PARTIALLY_APPLIED

        txn = record_payment_transaction(
            locked,
            transaction_type=TXN_CREDIT_MEMO,
            amount_cents=amount,
            method="credit_memo",
            status="completed",
        )
        status = apply_paid_delta(locked, amount)
        invoice, created = upsert_invoice(locked, payment_method="credit_memo", transaction_reference=None)
        txn.invoice_id = invoice.id
        record_account_transaction(
            customer_id=locked.customer_id,
            order_id=locked.id,
            entry_type=ENTRY_DEBIT,
            reference_type=REF_CREDIT_MEMO,
            amount_cents=amount,
            description=f"Credit memo {memo.memo_number} applied to order {locked.order_number}",
            processed_by=processed_by,
        )
        db.session.commit()

        receipt = Receipt(
            order_id=locked.id,
            order_number=locked.order_number,
            amount_cents=amount,
            method="credit_memo",
            transaction_type=TXN_CREDIT_MEMO,
            payment_transaction_id=txn.id,
            gateway_transaction_id=None,
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            invoice_created=created,
            payment_status=status,
            paid_amount_cents=locked.paid_amount_cents,
            balance_due_cents=max(0, locked.total_amount_cents - locked.paid_amount_cents),
        )
        return receipt, was_unpaid, memo.memo_number

    receipt, first_payment, memo_number = run_with_retry(_op)
    if receipt.balance_due_cents <= tolerance:
        receipt.balance_due_cents = 0
    current_app.logger.info(
        "Applied credit memo %s (%s cents) to order %s",
        memo_number, receipt.amount_cents, order_id,
    )

    _after_capture(receipt, first_payment=first_payment, processed_by=processed_by)
    return receipt
