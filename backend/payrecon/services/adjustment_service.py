# Overview: Payment adjustment resolver; settles post-payment order total changes through five actions.

"""
Payment Adjustment Resolver

WHY: An order's total can change after money was captured (lines edited,
charges corrected). The difference has to be settled one way or another,
and every way leaves a different trail in the ledgers.

ACTIONS (one handler each):
Total went UP (customer owes more):
- collect_payment:    charge a saved card for the difference now
- send_payment_link:  record a pending adjustment and notify the customer;
                      fulfilled later through fulfill_payment_link()
- use_credit:         draw the difference from the customer's credit line
Total went DOWN (customer overpaid):
- issue_credit_memo:  store credit for the difference
- process_refund:     refund the difference against the original capture

RULES:
- Wrong-direction actions, a zero difference and orders with nothing paid
  are rejected before any side effect.
- Every branch stores the new total and re-derives payment_status.
- Every action is computed against the stored total; if that total moved
  before the rows are written, the adjustment is rejected.
- Adjustment rows are immutable; fulfilling a payment link writes a new
  completed row that points at the pending one.
- Gateway branches follow the capture orchestrator's order: pending
  attempt, gateway call, one grouped ledger transaction, audit-only
  fallback plus reconciliation item if that transaction cannot commit.
  The attempt carries the action's context, so an outcome confirmed later
  by an operator writes the same rows (record_confirmed_adjustment).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Union

from flask import current_app

from ..extensions import db
from ..errors import (
    GatewayError,
    GatewayTimeout,
    LedgerWriteFailure,
    NotFoundError,
    PaymentDeclined,
    ValidationError,
)
from ..models import Adjustment, CreditMemo, GatewayAttempt, PaymentTransaction
from payrecon.time_utils import utcnow
from .activity_service import ADJUSTMENT, append_activity, dollars, method_label
from .balance_service import compute_total, snapshot_order
from .concurrency import run_with_retry
from .gateway_client import get_gateway
from .ledger_store import (
    ENTRY_CREDIT,
    ENTRY_DEBIT,
    MEMO_ISSUED,
    REF_CREDIT_MEMO,
    REF_PAYMENT,
    REF_REFUND,
    TXN_ADDITIONAL_PAYMENT,
    TXN_REFUND,
    apply_paid_delta,
    get_customer,
    get_order,
    mirror_invoice,
    original_transaction_id,
    record_account_transaction,
    record_payment_transaction,
    store_credit_balance,
)
from . import notification_service
from .payment_methods import SavedCardPayment
from .reconciliation_service import (
    ATTEMPT_CAPTURED,
    ATTEMPT_DECLINED,
    ATTEMPT_FAILED,
    ATTEMPT_UNKNOWN,
    KIND_LEDGER_WRITE_FAILED,
    KIND_OUTCOME_UNKNOWN,
    ensure_no_blocking_attempt,
    finish_attempt,
    find_blocking_attempt,
    open_item,
    start_attempt,
)
from .sequence_service import allocate


INCREASE = "increase"
DECREASE = "decrease"

TYPE_ADDITIONAL_PAYMENT = "additional_payment"
TYPE_CREDIT_MEMO_ISSUED = "credit_memo_issued"
TYPE_PARTIAL_REFUND = "partial_refund"

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"

ACTION_FULFILL_PAYMENT_LINK = "fulfill_payment_link"


# =============================================================================
# ACTION VARIANTS
# =============================================================================

@dataclass(frozen=True)
class CollectPayment:
    saved_method_id: int | None = None

    name: ClassVar[str] = "collect_payment"
    direction: ClassVar[str] = INCREASE


@dataclass(frozen=True)
class SendPaymentLink:
    email: str | None = None

    name: ClassVar[str] = "send_payment_link"
    direction: ClassVar[str] = INCREASE


@dataclass(frozen=True)
class UseCredit:
    name: ClassVar[str] = "use_credit"
    direction: ClassVar[str] = INCREASE


@dataclass(frozen=True)
class IssueCreditMemo:
    name: ClassVar[str] = "issue_credit_memo"
    direction: ClassVar[str] = DECREASE


@dataclass(frozen=True)
class ProcessRefund:
    # Record a refund with no original transaction id (no gateway call)
    acknowledge_unsafe: bool = False

    name: ClassVar[str] = "process_refund"
    direction: ClassVar[str] = DECREASE


AdjustmentAction = Union[CollectPayment, SendPaymentLink, UseCredit, IssueCreditMemo, ProcessRefund]

ACTIONS = {
    cls.name: cls
    for cls in (CollectPayment, SendPaymentLink, UseCredit, IssueCreditMemo, ProcessRefund)
}


def parse_adjustment_action(name: str | None, params: dict | None = None) -> AdjustmentAction:
    params = params or {}
    cls = ACTIONS.get((name or "").strip())
    if cls is None:
        raise ValidationError(
            f"Invalid adjustment action: {name or '(missing)'}",
            details={"allowed": sorted(ACTIONS)},
        )
    if cls is CollectPayment:
        saved_method_id = params.get("saved_method_id")
        if saved_method_id is not None and (isinstance(saved_method_id, bool) or not isinstance(saved_method_id, int)):
            raise ValidationError("saved_method_id must be an integer")
        return CollectPayment(saved_method_id=saved_method_id)
    if cls is SendPaymentLink:
        email = params.get("email")
        return SendPaymentLink(email=str(email).strip() if email else None)
    if cls is ProcessRefund:
        return ProcessRefund(acknowledge_unsafe=bool(params.get("acknowledge_unsafe", False)))
    return cls()


# =============================================================================
# RESULT / CONTEXT
# =============================================================================

@dataclass
class AdjustmentResult:
    action: str
    order_id: int
    difference_cents: int
    total_amount_cents: int
    paid_amount_cents: int
    payment_status: str
    adjustment: dict | None = None
    credit_memo: dict | None = None
    payment_transaction_id: int | None = None
    refund_id: str | None = None
    reconciliation_pending: bool = False
    reconciliation_item_id: int | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "order_id": self.order_id,
            "difference_cents": self.difference_cents,
            "total_amount_cents": self.total_amount_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "payment_status": self.payment_status,
            "adjustment": self.adjustment,
            "credit_memo": self.credit_memo,
            "payment_transaction_id": self.payment_transaction_id,
            "refund_id": self.refund_id,
            "reconciliation_pending": self.reconciliation_pending,
            "reconciliation_item_id": self.reconciliation_item_id,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class AdjustmentContext:
    order_id: int
    customer_id: int
    order_number: str
    original_amount_cents: int
    new_amount_cents: int
    paid_amount_cents: int

    @property
    def difference_cents(self) -> int:
        return self.new_amount_cents - self.original_amount_cents

    @property
    def magnitude_cents(self) -> int:
        return abs(self.difference_cents)

    @property
    def direction(self) -> str | None:
        if self.difference_cents > 0:
            return INCREASE
        if self.difference_cents < 0:
            return DECREASE
        return None


def _optional_cents(value, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return value


def _build_context(order, original_amount_cents: int | None, new_amount_cents: int | None) -> AdjustmentContext:
    original = _optional_cents(original_amount_cents, "original_amount_cents")
    new = _optional_cents(new_amount_cents, "new_amount_cents")
    return AdjustmentContext(
        order_id=order.id,
        customer_id=order.customer_id,
        order_number=order.order_number,
        original_amount_cents=order.total_amount_cents if original is None else original,
        new_amount_cents=compute_total(snapshot_order(order)) if new is None else new,
        paid_amount_cents=order.paid_amount_cents or 0,
    )


def _check_context(order, ctx: AdjustmentContext, action: AdjustmentAction) -> None:
    if order.is_void:
        raise ValidationError("Cannot adjust a void order")
    if ctx.paid_amount_cents <= 0:
        raise ValidationError("Order has no captured payment; nothing to adjust")
    if ctx.direction is None:
        raise ValidationError("Order total did not change; nothing to adjust")
    if ctx.direction != action.direction:
        raise ValidationError(
            f"{action.name} requires the order total to {'increase' if action.direction == INCREASE else 'decrease'}",
            details={
                "original_amount_cents": ctx.original_amount_cents,
                "new_amount_cents": ctx.new_amount_cents,
                "difference_cents": ctx.difference_cents,
            },
        )


def _new_adjustment(ctx: AdjustmentContext, *, adjustment_type: str, **fields) -> Adjustment:
    adjustment = Adjustment(
        adjustment_number=allocate(current_app.config["ADJUSTMENT_PREFIX"]),
        order_id=ctx.order_id,
        customer_id=ctx.customer_id,
        adjustment_type=adjustment_type,
        original_amount_cents=ctx.original_amount_cents,
        new_amount_cents=ctx.new_amount_cents,
        difference_amount_cents=ctx.difference_cents,
        **fields,
    )
    db.session.add(adjustment)
    db.session.flush()
    return adjustment


def _result(action: AdjustmentAction, ctx: AdjustmentContext, order, adjustment: Adjustment | None, **extra) -> AdjustmentResult:
    return AdjustmentResult(
        action=action.name,
        order_id=order.id,
        difference_cents=ctx.difference_cents,
        total_amount_cents=order.total_amount_cents,
        paid_amount_cents=order.paid_amount_cents,
        payment_status=order.payment_status,
        adjustment=adjustment.to_dict() if adjustment is not None else None,
        **extra,
    )


def _log_activity(order_id: int, description: str, processed_by: str | None, payload: dict) -> None:
    """Best-effort timeline entry after the adjustment committed."""
    try:
        append_activity(
            order_id=order_id,
            activity_type=ADJUSTMENT,
            description=description,
            performed_by=processed_by,
            payload=payload,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Activity log failed for adjustment on order %s", order_id)


def _gateway_failure(exc: GatewayError, attempt: GatewayAttempt, ctx: AdjustmentContext, action_name: str) -> None:
    if isinstance(exc, GatewayTimeout) or exc.outcome_unknown:
        finish_attempt(attempt, ATTEMPT_UNKNOWN, error_message=exc.message)
        open_item(
            KIND_OUTCOME_UNKNOWN,
            order_id=ctx.order_id,
            gateway_attempt_id=attempt.id,
            amount_cents=ctx.magnitude_cents,
            payload={"action": action_name, "attempt_type": attempt.attempt_type},
            error=exc.message,
        )
    else:
        finish_attempt(attempt, ATTEMPT_FAILED, error_message=exc.message)


def _audit_fallback(
    ctx: AdjustmentContext,
    action: AdjustmentAction,
    *,
    attempt_id: int | None,
    error: Exception,
    transaction_type: str,
    method: str,
    gateway_transaction_id: str | None,
    status: str,
    last_four: str | None = None,
    brand: str | None = None,
) -> AdjustmentResult:
    """Payment transaction alone + reconciliation item; LedgerWriteFailure if even that fails."""
    db.session.rollback()
    current_app.logger.exception(
        "Ledger writes failed after %s on order %s (gateway_txn=%s)",
        action.name, ctx.order_id, gateway_transaction_id,
    )
    try:
        order = get_order(ctx.order_id)
        txn = record_payment_transaction(
            order,
            transaction_type=transaction_type,
            amount_cents=ctx.magnitude_cents,
            method=method,
            gateway_transaction_id=gateway_transaction_id,
            status=status,
            last_four=last_four,
            brand=brand,
        )
        if attempt_id is not None:
            attempt = db.session.query(GatewayAttempt).filter_by(id=attempt_id).first()
            if attempt is not None:
                attempt.status = ATTEMPT_CAPTURED
                attempt.gateway_transaction_id = gateway_transaction_id
                attempt.resolved_at = utcnow()
        db.session.commit()
        item = open_item(
            KIND_LEDGER_WRITE_FAILED,
            order_id=ctx.order_id,
            gateway_attempt_id=attempt_id,
            amount_cents=ctx.magnitude_cents,
            gateway_transaction_id=gateway_transaction_id,
            payload={
                "payment_transaction_id": txn.id,
                "action": action.name,
                "original_amount_cents": ctx.original_amount_cents,
                "new_amount_cents": ctx.new_amount_cents,
                "missing": ["order_paid_amount", "adjustment", "account_transaction"],
            },
            error=f"{error.__class__.__name__}: {error}",
        )
    except Exception as audit_exc:
        db.session.rollback()
        current_app.logger.critical(
            "UNRECORDED ADJUSTMENT: action=%s order_id=%s amount_cents=%s gateway_txn=%s "
            "attempt_id=%s ledger_error=%r audit_error=%r",
            action.name, ctx.order_id, ctx.magnitude_cents, gateway_transaction_id,
            attempt_id, error, audit_exc,
        )
        raise LedgerWriteFailure(
            "Gateway processed the adjustment; recording is pending reconciliation",
            details={
                "order_id": ctx.order_id,
                "amount_cents": ctx.magnitude_cents,
                "gateway_transaction_id": gateway_transaction_id,
            },
        ) from audit_exc

    order = get_order(ctx.order_id)
    result = _result(action, ctx, order, None, payment_transaction_id=txn.id)
    result.reconciliation_pending = True
    result.reconciliation_item_id = item.id
    return result


# =============================================================================
# GROUPED WRITES
# =============================================================================
# Shared by the handlers and by record_confirmed_adjustment(), so a gateway
# outcome confirmed by an operator lands as exactly the same rows.

def _ensure_total_unchanged(order, ctx: AdjustmentContext) -> None:
    if order.total_amount_cents != ctx.original_amount_cents:
        raise ValidationError(
            "Order total changed since this adjustment was computed; reload and try again",
            details={
                "expected_total_cents": ctx.original_amount_cents,
                "stored_total_cents": order.total_amount_cents,
            },
        )


def _mark_attempt_captured(attempt_id: int | None, gateway_transaction_id: str | None) -> None:
    if attempt_id is None:
        return
    attempt = db.session.query(GatewayAttempt).filter_by(id=attempt_id).first()
    if attempt is not None:
        attempt.status = ATTEMPT_CAPTURED
        attempt.gateway_transaction_id = gateway_transaction_id
        attempt.resolved_at = utcnow()


def _write_additional_payment(
    action: CollectPayment,
    ctx: AdjustmentContext,
    *,
    method_kind: str,
    last_four: str | None,
    brand: str | None,
    gateway_transaction_id: str | None,
    auth_code: str | None,
    attempt_id: int | None,
    reason: str | None,
    processed_by: str | None,
) -> AdjustmentResult:
    """Payment transaction, paid amount + new total, invoice, account credit, adjustment. Commits."""
    def _op():
        order = get_order(ctx.order_id, lock=True)
        _ensure_total_unchanged(order, ctx)
        txn = record_payment_transaction(
            order,
            transaction_type=TXN_ADDITIONAL_PAYMENT,
            amount_cents=ctx.magnitude_cents,
            method=method_kind,
            gateway_transaction_id=gateway_transaction_id,
            auth_code=auth_code,
            status="completed",
            last_four=last_four,
            brand=brand,
        )
        apply_paid_delta(order, ctx.magnitude_cents, new_total_cents=ctx.new_amount_cents)
        invoice = mirror_invoice(order)
        if invoice is not None:
            txn.invoice_id = invoice.id
        record_account_transaction(
            customer_id=order.customer_id,
            order_id=order.id,
            entry_type=ENTRY_CREDIT,
            reference_type=REF_PAYMENT,
            amount_cents=ctx.magnitude_cents,
            description=f"Additional payment for order {order.order_number}",
            processed_by=processed_by,
            gateway_transaction_id=gateway_transaction_id,
        )
        adjustment = _new_adjustment(
            ctx,
            adjustment_type=TYPE_ADDITIONAL_PAYMENT,
            payment_method=method_kind,
            payment_status=STATUS_COMPLETED,
            payment_transaction_id=txn.id,
            reason=reason,
            processed_by=processed_by,
        )
        _mark_attempt_captured(attempt_id, gateway_transaction_id)
        db.session.commit()
        return _result(action, ctx, order, adjustment, payment_transaction_id=txn.id)

    return run_with_retry(_op)


def _write_refund(
    action: ProcessRefund,
    ctx: AdjustmentContext,
    *,
    method: str,
    refund_id: str | None,
    refund_status: str,
    last_four: str | None,
    attempt_id: int | None,
    reason: str | None,
    processed_by: str | None,
) -> AdjustmentResult:
    """Refund transaction, paid amount + new total, invoice, account debit, adjustment. Commits."""
    def _op():
        order = get_order(ctx.order_id, lock=True)
        _ensure_total_unchanged(order, ctx)
        txn = record_payment_transaction(
            order,
            transaction_type=TXN_REFUND,
            amount_cents=ctx.magnitude_cents,
            method=method,
            gateway_transaction_id=refund_id,
            status=refund_status,
            last_four=last_four,
        )
        apply_paid_delta(order, -ctx.magnitude_cents, new_total_cents=ctx.new_amount_cents)
        invoice = mirror_invoice(order)
        if invoice is not None:
            txn.invoice_id = invoice.id
        record_account_transaction(
            customer_id=order.customer_id,
            order_id=order.id,
            entry_type=ENTRY_DEBIT,
            reference_type=REF_REFUND,
            amount_cents=ctx.magnitude_cents,
            description=f"Refund for order {order.order_number}",
            processed_by=processed_by,
            gateway_transaction_id=refund_id,
        )
        adjustment = _new_adjustment(
            ctx,
            adjustment_type=TYPE_PARTIAL_REFUND,
            payment_method=method,
            payment_status=refund_status,
            refund_id=refund_id,
            payment_transaction_id=txn.id,
            reason=reason,
            processed_by=processed_by,
        )
        _mark_attempt_captured(attempt_id, refund_id)
        db.session.commit()
        return _result(action, ctx, order, adjustment, payment_transaction_id=txn.id, refund_id=refund_id)

    return run_with_retry(_op)


def _write_link_completion(
    pending: dict,
    *,
    payment_method: str,
    payment_transaction_id: int | None,
    processed_by: str | None,
) -> dict:
    """Completed row pointing at a fulfilled payment link. Commits."""
    def _op():
        order = get_order(pending["order_id"])
        adjustment = Adjustment(
            adjustment_number=allocate(current_app.config["ADJUSTMENT_PREFIX"]),
            order_id=order.id,
            customer_id=order.customer_id,
            adjustment_type=TYPE_ADDITIONAL_PAYMENT,
            original_amount_cents=pending["original_amount_cents"],
            new_amount_cents=pending["new_amount_cents"],
            difference_amount_cents=pending["difference_amount_cents"],
            payment_method=payment_method,
            payment_status=STATUS_COMPLETED,
            payment_transaction_id=payment_transaction_id,
            fulfills_adjustment_id=pending["id"],
            processed_by=processed_by,
        )
        db.session.add(adjustment)
        db.session.commit()
        return adjustment.to_dict()

    return run_with_retry(_op)


# =============================================================================
# HANDLERS
# =============================================================================

def _collect_payment(action: CollectPayment, ctx: AdjustmentContext, *, reason, processed_by) -> AdjustmentResult:
    from .capture_service import resolve_saved_method

    if action.saved_method_id is None:
        raise ValidationError("collect_payment requires saved_method_id")
    method = resolve_saved_method(SavedCardPayment(saved_method_id=action.saved_method_id), ctx.customer_id)

    gateway = get_gateway()
    gateway.ensure_configured()
    ensure_no_blocking_attempt(ctx.order_id)
    _ensure_total_unchanged(get_order(ctx.order_id, lock=True), ctx)

    attempt = start_attempt(
        order_id=ctx.order_id,
        attempt_type="additional_payment",
        method=method.kind,
        amount_cents=ctx.magnitude_cents,
        context={
            "action": action.name,
            "original_amount_cents": ctx.original_amount_cents,
            "new_amount_cents": ctx.new_amount_cents,
            "saved_method_id": action.saved_method_id,
            "last_four": method.last_four,
            "brand": method.brand,
            "reason": reason,
            "processed_by": processed_by,
        },
    )
    try:
        result = gateway.charge_saved_method(
            method,
            ctx.magnitude_cents,
            order_reference=ctx.order_number,
        )
    except GatewayError as exc:
        _gateway_failure(exc, attempt, ctx, action.name)
        raise
    if not result.success:
        finish_attempt(attempt, ATTEMPT_DECLINED, error_code=result.error_code, error_message=result.error)
        raise PaymentDeclined(
            result.error_code,
            result.error or "Payment declined",
            details={"order_id": ctx.order_id, "gateway_attempt_id": attempt.id},
        )
    attempt_id = attempt.id

    try:
        outcome = _write_additional_payment(
            action, ctx,
            method_kind=method.kind,
            last_four=method.last_four,
            brand=method.brand,
            gateway_transaction_id=result.transaction_id,
            auth_code=result.auth_code,
            attempt_id=attempt_id,
            reason=reason,
            processed_by=processed_by,
        )
    except Exception as exc:
        return _audit_fallback(
            ctx, action,
            attempt_id=attempt_id,
            error=exc,
            transaction_type=TXN_ADDITIONAL_PAYMENT,
            method=method.kind,
            gateway_transaction_id=result.transaction_id,
            status="completed",
            last_four=method.last_four,
            brand=method.brand,
        )

    _log_activity(
        ctx.order_id,
        f"Additional payment of {dollars(ctx.magnitude_cents)} collected via "
        f"{method_label(method.kind)} ({outcome.adjustment['adjustment_number']})",
        processed_by,
        {"transaction_id": result.transaction_id, "amount_cents": ctx.magnitude_cents},
    )
    return outcome


def _send_payment_link(action: SendPaymentLink, ctx: AdjustmentContext, *, reason, processed_by) -> AdjustmentResult:
    def _op():
        order = get_order(ctx.order_id, lock=True)
        _ensure_total_unchanged(order, ctx)
        apply_paid_delta(order, 0, new_total_cents=ctx.new_amount_cents)
        mirror_invoice(order)
        adjustment = _new_adjustment(
            ctx,
            adjustment_type=TYPE_ADDITIONAL_PAYMENT,
            payment_method="payment_link",
            payment_status=STATUS_PENDING,
            reason=reason,
            processed_by=processed_by,
        )
        db.session.commit()
        return _result(action, ctx, order, adjustment)

    outcome = run_with_retry(_op)

    email = action.email
    if not email:
        customer = get_customer(ctx.customer_id)
        email = customer.email
    notification_service.notify(
        notification_service.PAYMENT_LINK_SENT,
        {
            "order_id": ctx.order_id,
            "order_number": ctx.order_number,
            "adjustment_id": outcome.adjustment["id"],
            "amount_cents": ctx.magnitude_cents,
            "email": email,
        },
    )
    if not email:
        outcome.warnings.append("customer_has_no_email")

    _log_activity(
        ctx.order_id,
        f"Payment link sent for additional payment of {dollars(ctx.magnitude_cents)}",
        processed_by,
        {"adjustment_id": outcome.adjustment["id"], "email": email},
    )
    return outcome


def _use_credit(action: UseCredit, ctx: AdjustmentContext, *, reason, processed_by) -> AdjustmentResult:
    def _op():
        order = get_order(ctx.order_id, lock=True)
        _ensure_total_unchanged(order, ctx)
        customer = get_customer(ctx.customer_id, lock=True)
        available = customer.available_credit_cents
        if available < ctx.magnitude_cents:
            raise ValidationError(
                "Insufficient available credit",
                details={"available_credit_cents": available, "required_cents": ctx.magnitude_cents},
            )
        customer.credit_used_cents = (customer.credit_used_cents or 0) + ctx.magnitude_cents
        apply_paid_delta(order, ctx.magnitude_cents, new_total_cents=ctx.new_amount_cents)
        mirror_invoice(order)
        adjustment = _new_adjustment(
            ctx,
            adjustment_type=TYPE_ADDITIONAL_PAYMENT,
            payment_method="credit",
            payment_status=STATUS_COMPLETED,
            reason=reason,
            processed_by=processed_by,
        )
        db.session.commit()
        return _result(action, ctx, order, adjustment)

    outcome = run_with_retry(_op)
    _log_activity(
        ctx.order_id,
        f"Additional payment of {dollars(ctx.magnitude_cents)} collected via "
        f"{method_label('credit')} ({outcome.adjustment['adjustment_number']})",
        processed_by,
        {"amount_cents": ctx.magnitude_cents},
    )
    return outcome


def _issue_credit_memo(action: IssueCreditMemo, ctx: AdjustmentContext, *, reason, processed_by) -> AdjustmentResult:
    def _op():
        order = get_order(ctx.order_id, lock=True)
        _ensure_total_unchanged(order, ctx)
        memo = CreditMemo(
            memo_number=allocate(current_app.config["CREDIT_MEMO_PREFIX"]),
            customer_id=order.customer_id,
            order_id=order.id,
            amount_cents=ctx.magnitude_cents,
            balance_cents=ctx.magnitude_cents,
            status=MEMO_ISSUED,
            reason=reason,
            issued_by=processed_by,
        )
        db.session.add(memo)
        db.session.flush()

        record_account_transaction(
            customer_id=order.customer_id,
            order_id=order.id,
            entry_type=ENTRY_CREDIT,
            reference_type=REF_CREDIT_MEMO,
            amount_cents=ctx.magnitude_cents,
            description=f"Credit memo {memo.memo_number} for order {order.order_number}",
            processed_by=processed_by,
        )
        apply_paid_delta(order, 0, new_total_cents=ctx.new_amount_cents)
        mirror_invoice(order)
        adjustment = _new_adjustment(
            ctx,
            adjustment_type=TYPE_CREDIT_MEMO_ISSUED,
            payment_method="credit_memo",
            payment_status=STATUS_COMPLETED,
            credit_memo_id=memo.id,
            reason=reason,
            processed_by=processed_by,
        )
        db.session.commit()
        return _result(action, ctx, order, adjustment, credit_memo=memo.to_dict())

    outcome = run_with_retry(_op)
    notification_service.notify(
        notification_service.CREDIT_MEMO_ISSUED,
        {"order_id": ctx.order_id, "credit_memo": outcome.credit_memo},
    )
    _log_activity(
        ctx.order_id,
        f"Credit memo of {dollars(ctx.magnitude_cents)} issued ({outcome.credit_memo['memo_number']})",
        processed_by,
        {"credit_memo_id": outcome.credit_memo["id"]},
    )
    return outcome


def _process_refund(action: ProcessRefund, ctx: AdjustmentContext, *, reason, processed_by) -> AdjustmentResult:
    order = get_order(ctx.order_id)
    original_txn = original_transaction_id(order)
    if ctx.magnitude_cents > ctx.paid_amount_cents:
        raise ValidationError(
            "Refund exceeds the amount paid",
            details={"refund_cents": ctx.magnitude_cents, "paid_amount_cents": ctx.paid_amount_cents},
        )

    refund_id = None
    refund_status = STATUS_COMPLETED
    method = "card_refund"
    attempt_id = None
    last_four = None

    if original_txn is None:
        if not action.acknowledge_unsafe:
            raise ValidationError(
                "No original transaction id on this order; the refund cannot be sent to the gateway",
                details={"degraded": True, "reason": "missing_original_transaction", "requires": "acknowledge_unsafe"},
            )
        # Out-of-band refund: recorded as pending, money returned by hand
        method = "manual"
        refund_status = STATUS_PENDING
        current_app.logger.warning(
            "Recording refund of %s cents on order %s without an original transaction",
            ctx.magnitude_cents, ctx.order_id,
        )
    else:
        gateway = get_gateway()
        gateway.ensure_configured()
        ensure_no_blocking_attempt(ctx.order_id)
        _ensure_total_unchanged(get_order(ctx.order_id, lock=True), ctx)
        last_four = _card_last_four(ctx.order_id)

        attempt = start_attempt(
            order_id=ctx.order_id,
            attempt_type="refund",
            method=method,
            amount_cents=ctx.magnitude_cents,
            context={
                "action": action.name,
                "original_amount_cents": ctx.original_amount_cents,
                "new_amount_cents": ctx.new_amount_cents,
                "original_transaction_id": original_txn,
                "last_four": last_four,
                "reason": reason,
                "processed_by": processed_by,
            },
        )
        attempt_id = attempt.id
        try:
            refund = gateway.refund(ctx.magnitude_cents, original_txn, card_last_four=last_four)
        except GatewayError as exc:
            _gateway_failure(exc, attempt, ctx, action.name)
            raise
        if not refund.success:
            finish_attempt(attempt, ATTEMPT_DECLINED, error_code=refund.error_code, error_message=refund.error)
            raise PaymentDeclined(
                refund.error_code,
                refund.error or "Refund failed",
                details={"order_id": ctx.order_id, "gateway_attempt_id": attempt.id},
            )
        refund_id = refund.refund_id
        refund_status = STATUS_COMPLETED if refund.status == "completed" else STATUS_PENDING

    try:
        outcome = _write_refund(
            action, ctx,
            method=method,
            refund_id=refund_id,
            refund_status=refund_status,
            last_four=last_four,
            attempt_id=attempt_id,
            reason=reason,
            processed_by=processed_by,
        )
    except Exception as exc:
        if attempt_id is None:
            raise
        return _audit_fallback(
            ctx, action,
            attempt_id=attempt_id,
            error=exc,
            transaction_type=TXN_REFUND,
            method=method,
            gateway_transaction_id=refund_id,
            status=refund_status,
            last_four=last_four,
        )

    if refund_status == STATUS_PENDING:
        outcome.warnings.append("refund_pending")
    _after_refund(ctx, outcome, original_txn, processed_by)
    return outcome


def _after_refund(ctx: AdjustmentContext, outcome: AdjustmentResult, original_txn: str | None, processed_by) -> None:
    notification_service.notify(
        notification_service.REFUND_PROCESSED,
        {"order_id": ctx.order_id, "amount_cents": ctx.magnitude_cents, "refund_id": outcome.refund_id},
    )
    _log_activity(
        ctx.order_id,
        f"Partial refund of {dollars(ctx.magnitude_cents)} processed ({outcome.adjustment['adjustment_number']})",
        processed_by,
        {
            "refund_id": outcome.refund_id,
            "original_transaction_id": original_txn,
            "amount_cents": ctx.magnitude_cents,
        },
    )


_HANDLERS = {
    CollectPayment: _collect_payment,
    SendPaymentLink: _send_payment_link,
    UseCredit: _use_credit,
    IssueCreditMemo: _issue_credit_memo,
    ProcessRefund: _process_refund,
}


# =============================================================================
# PUBLIC API
# =============================================================================

def resolve_adjustment(
    order_id: int,
    action: AdjustmentAction,
    *,
    original_amount_cents: int | None = None,
    new_amount_cents: int | None = None,
    reason: str | None = None,
    processed_by: str | None = None,
) -> AdjustmentResult:
    """
    Settle the difference between an order's last reconciled total and its
    new total with one action.

    original_amount_cents defaults to the stored total and must match it
    when given; new_amount_cents defaults to the total derived from the
    order's current lines.
    """
    handler = _HANDLERS.get(type(action))
    if handler is None:
        raise ValidationError(f"Unsupported adjustment action: {action!r}")

    order = get_order(order_id)
    ctx = _build_context(order, original_amount_cents, new_amount_cents)
    _check_context(order, ctx, action)
    _ensure_total_unchanged(order, ctx)
    ensure_no_blocking_attempt(order_id)

    reason = (reason or "").strip()[:500] or None
    current_app.logger.info(
        "Resolving adjustment on order %s: %s %s -> %s via %s",
        order_id, ctx.direction, ctx.original_amount_cents, ctx.new_amount_cents, action.name,
    )
    return handler(action, ctx, reason=reason, processed_by=processed_by)


def get_adjustment_options(
    order_id: int,
    *,
    original_amount_cents: int | None = None,
    new_amount_cents: int | None = None,
) -> dict:
    """What each action would do for this order right now, and whether it can."""
    order = get_order(order_id)
    ctx = _build_context(order, original_amount_cents, new_amount_cents)
    customer = get_customer(order.customer_id)
    saved_methods = [m for m in customer.saved_payment_methods if m.is_active]
    original_txn = original_transaction_id(order)
    blocking = find_blocking_attempt(order.id)
    gateway_ready = get_gateway().configured

    base_block = None
    if order.is_void:
        base_block = "order_void"
    elif ctx.paid_amount_cents <= 0:
        base_block = "no_payment"
    elif ctx.direction is None:
        base_block = "no_difference"
    elif blocking is not None:
        base_block = "gateway_attempt_unresolved"
    elif order.total_amount_cents != ctx.original_amount_cents:
        base_block = "total_changed"

    def _option(cls, *, blocked: str | None = None, degraded: bool = False, **extra) -> dict:
        reason = base_block
        if reason is None and ctx.direction != cls.direction:
            reason = "wrong_direction"
        if reason is None:
            reason = blocked
        return {
            "action": cls.name,
            "direction": cls.direction,
            "available": reason is None,
            "degraded": degraded,
            "reason": reason,
            **extra,
        }

    gateway_block = "gateway_not_configured" if not gateway_ready else None

    options = [
        _option(
            CollectPayment,
            blocked=gateway_block or (None if saved_methods else "no_saved_payment_method"),
            saved_methods=[m.to_dict() for m in saved_methods],
        ),
        _option(SendPaymentLink, email=customer.email),
        _option(
            UseCredit,
            blocked=None if customer.available_credit_cents >= ctx.magnitude_cents else "insufficient_credit",
            available_credit_cents=customer.available_credit_cents,
        ),
        _option(IssueCreditMemo),
        _option(
            ProcessRefund,
            blocked=(gateway_block if original_txn else None)
            or (None if ctx.magnitude_cents <= ctx.paid_amount_cents else "refund_exceeds_paid"),
            degraded=original_txn is None,
            original_transaction_id=original_txn,
        ),
    ]

    return {
        "order_id": order.id,
        "original_amount_cents": ctx.original_amount_cents,
        "new_amount_cents": ctx.new_amount_cents,
        "difference_cents": ctx.difference_cents,
        "direction": ctx.direction,
        "paid_amount_cents": ctx.paid_amount_cents,
        "available_credit_cents": customer.available_credit_cents,
        "store_credit_cents": store_credit_balance(customer.id),
        "options": options,
    }


def list_adjustments(order_id: int) -> list[Adjustment]:
    get_order(order_id)
    return (
        db.session.query(Adjustment)
        .filter_by(order_id=order_id)
        .order_by(Adjustment.created_at.asc(), Adjustment.id.asc())
        .all()
    )


def fulfill_payment_link(
    adjustment_id: int,
    payment_method,
    *,
    billing=None,
    processed_by: str | None = None,
) -> dict:
    """
    Customer paid through a payment link: capture the pending difference and
    record a completed adjustment pointing at the pending one.

    Returns {"receipt": ..., "adjustment": ...}.
    """
    from .capture_service import capture

    pending = db.session.query(Adjustment).filter_by(id=adjustment_id).first()
    if pending is None:
        raise NotFoundError(f"Adjustment {adjustment_id} not found")
    if pending.payment_method != "payment_link" or pending.payment_status != STATUS_PENDING:
        raise ValidationError("Adjustment is not a pending payment link")
    already = (
        db.session.query(Adjustment.id)
        .filter_by(fulfills_adjustment_id=pending.id)
        .first()
    )
    if already is not None:
        raise ValidationError("Payment link was already fulfilled", details={"adjustment_id": already[0]})

    link = {
        "id": pending.id,
        "order_id": pending.order_id,
        "original_amount_cents": pending.original_amount_cents,
        "new_amount_cents": pending.new_amount_cents,
        "difference_amount_cents": pending.difference_amount_cents,
    }

    receipt = capture(
        link["order_id"],
        payment_method,
        link["difference_amount_cents"],
        billing=billing,
        processed_by=processed_by,
        transaction_type=TXN_ADDITIONAL_PAYMENT,
        attempt_context={"action": ACTION_FULFILL_PAYMENT_LINK, "payment_link": link, "processed_by": processed_by},
    )

    completed = None
    if not receipt.reconciliation_pending:
        try:
            completed = _write_link_completion(
                link,
                payment_method=receipt.method,
                payment_transaction_id=receipt.payment_transaction_id,
                processed_by=processed_by,
            )
        except Exception:
            db.session.rollback()
            current_app.logger.exception(
                "Payment link %s was paid but its completion row could not be written", link["id"],
            )
            receipt.warnings.append("adjustment_record_failed")

    return {"receipt": receipt.to_dict(), "adjustment": completed}


def record_confirmed_adjustment(
    attempt: GatewayAttempt,
    gateway_transaction_id: str,
    *,
    auth_code: str | None = None,
    processed_by: str | None = None,
) -> dict:
    """
    Write what an adjustment's gateway call would have written, for an
    attempt an operator confirmed as captured after its outcome was unknown.

    The attempt's context names the action and the amounts it settled. The
    rows are the same grouped write the live handler uses, so the new total
    is stored and the adjustment row exists without a second gateway call.
    Raises ValidationError if the order total moved since the attempt.
    """
    context = dict(attempt.context or {})
    action_name = context.get("action")
    recorded_by = context.get("processed_by") or processed_by

    if action_name == ACTION_FULFILL_PAYMENT_LINK:
        from .capture_service import record_confirmed_capture

        ledger = record_confirmed_capture(
            attempt, gateway_transaction_id, auth_code=auth_code, processed_by=recorded_by,
        )
        adjustment = _write_link_completion(
            context["payment_link"],
            payment_method=attempt.method,
            payment_transaction_id=ledger["payment_transaction_id"],
            processed_by=recorded_by,
        )
        return {"payment_transaction_id": ledger["payment_transaction_id"], "adjustment": adjustment}

    order = get_order(attempt.order_id)
    ctx = AdjustmentContext(
        order_id=order.id,
        customer_id=order.customer_id,
        order_number=order.order_number,
        original_amount_cents=context["original_amount_cents"],
        new_amount_cents=context["new_amount_cents"],
        paid_amount_cents=order.paid_amount_cents or 0,
    )

    if action_name == CollectPayment.name:
        outcome = _write_additional_payment(
            CollectPayment(saved_method_id=context.get("saved_method_id")), ctx,
            method_kind=attempt.method,
            last_four=context.get("last_four"),
            brand=context.get("brand"),
            gateway_transaction_id=gateway_transaction_id,
            auth_code=auth_code,
            attempt_id=attempt.id,
            reason=context.get("reason"),
            processed_by=recorded_by,
        )
        _log_activity(
            ctx.order_id,
            f"Additional payment of {dollars(ctx.magnitude_cents)} confirmed as collected via "
            f"{method_label(attempt.method)} ({outcome.adjustment['adjustment_number']})",
            processed_by,
            {"transaction_id": gateway_transaction_id, "gateway_attempt_id": attempt.id},
        )
    elif action_name == ProcessRefund.name:
        outcome = _write_refund(
            ProcessRefund(), ctx,
            method=attempt.method,
            refund_id=gateway_transaction_id,
            refund_status=STATUS_COMPLETED,
            last_four=context.get("last_four"),
            attempt_id=attempt.id,
            reason=context.get("reason"),
            processed_by=recorded_by,
        )
        _after_refund(ctx, outcome, context.get("original_transaction_id"), processed_by)
    else:
        raise ValidationError(f"Gateway attempt {attempt.id} has an unknown action: {action_name}")

    current_app.logger.info(
        "Recorded confirmed %s for attempt %s on order %s (gateway_txn=%s)",
        action_name, attempt.id, ctx.order_id, gateway_transaction_id,
    )
    return outcome.to_dict()


def _card_last_four(order_id: int) -> str | None:
    """Last four of the most recent card capture on the order, for refunds."""
    row = (
        db.session.query(PaymentTransaction.last_four)
        .filter(
            PaymentTransaction.order_id == order_id,
            PaymentTransaction.transaction_type != TXN_REFUND,
            PaymentTransaction.method.in_(("card", "saved_card")),
        )
        .order_by(PaymentTransaction.id.desc())
        .first()
    )
    return row[0] if row else None
