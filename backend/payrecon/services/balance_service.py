# Overview: Balance engine; pure amount math over an order snapshot.

"""
Balance Engine

WHY: Every caller (checkout, payment modal, adjustment resolver, invoice
mirror) needs the same answer to "what is owed, what was paid, what is
due". Keeping the math in pure functions over an immutable snapshot means
the answer cannot depend on who asks or how often.

RULES:
- subtotal = sum over lines, sum over sizes, of quantity * unit_price
- total = subtotal + shipping + tax - discount
          (+ handling + freight while the purchase order is not accepted)
- balance_due = max(0, total - paid), zero when within the tolerance
- payment_status: paid if nothing is due or the order is already marked
  paid; partial_paid if 0 < paid < total; otherwise the previous
  unpaid/pending value
- amount_to_pay = balance_due when partial_paid, else total

A manually-marked "paid" order whose paid_amount does not cover the total
keeps status "paid" and still reports a positive balance_due. Status and
balance are independent facts; both are returned.

All amounts are integer cents.
"""

from __future__ import annotations

from dataclasses import dataclass, field

STATUS_UNPAID = "unpaid"
STATUS_PENDING = "pending"
STATUS_PARTIAL = "partial_paid"
STATUS_PAID = "paid"

VALID_PAYMENT_STATUSES = (STATUS_UNPAID, STATUS_PENDING, STATUS_PARTIAL, STATUS_PAID)

DEFAULT_TOLERANCE_CENTS = 1


@dataclass(frozen=True)
class SizeSnapshot:
    quantity: int
    unit_price_cents: int


@dataclass(frozen=True)
class LineSnapshot:
    sizes: tuple[SizeSnapshot, ...] = ()


@dataclass(frozen=True)
class OrderSnapshot:
    lines: tuple[LineSnapshot, ...] = ()
    shipping_cost_cents: int = 0
    tax_amount_cents: int = 0
    discount_amount_cents: int = 0
    po_accept: bool | None = None
    handling_charges_cents: int = 0
    freight_charges_cents: int = 0
    stored_total_cents: int = 0
    paid_amount_cents: int = 0
    payment_status: str = STATUS_UNPAID


@dataclass(frozen=True)
class BalanceSummary:
    total_cents: int
    paid_cents: int
    due_cents: int
    status: str
    amount_to_pay_cents: int
    subtotal_cents: int = 0
    surcharges_cents: int = 0
    warnings: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict:
        return {
            "total_cents": self.total_cents,
            "paid_cents": self.paid_cents,
            "due_cents": self.due_cents,
            "status": self.status,
            "amount_to_pay_cents": self.amount_to_pay_cents,
            "subtotal_cents": self.subtotal_cents,
            "surcharges_cents": self.surcharges_cents,
            "warnings": list(self.warnings),
        }


def snapshot_order(order, *, paid_amount_cents: int | None = None, payment_status: str | None = None) -> OrderSnapshot:
    """
    Freeze an Order model (or anything shaped like one) into a snapshot.

    paid_amount_cents / payment_status override the order's values so a
    caller can ask "what would the balance be after this payment".
    """
    if paid_amount_cents is None:
        paid_amount_cents = order.paid_amount_cents or 0

    lines = tuple(
        LineSnapshot(
            sizes=tuple(
                SizeSnapshot(quantity=int(size.quantity), unit_price_cents=int(size.unit_price_cents))
                for size in line.sizes
            )
        )
        for line in (order.lines or [])
    )
    return OrderSnapshot(
        lines=lines,
        shipping_cost_cents=order.shipping_cost_cents or 0,
        tax_amount_cents=order.tax_amount_cents or 0,
        discount_amount_cents=order.discount_amount_cents or 0,
        po_accept=order.po_accept,
        handling_charges_cents=order.handling_charges_cents or 0,
        freight_charges_cents=order.freight_charges_cents or 0,
        stored_total_cents=order.total_amount_cents or 0,
        paid_amount_cents=paid_amount_cents,
        payment_status=payment_status or order.payment_status or STATUS_UNPAID,
    )


def compute_subtotal(lines) -> int:
    return sum(
        size.quantity * size.unit_price_cents
        for line in lines
        for size in line.sizes
    )


def compute_surcharges(snapshot: OrderSnapshot) -> int:
    # Handling/freight apply only while the purchase order has not been accepted
    if snapshot.po_accept is False:
        return snapshot.handling_charges_cents + snapshot.freight_charges_cents
    return 0


def compute_total(snapshot: OrderSnapshot) -> int:
    """
    Order total in cents.

    Orders carrying no lines (legacy or externally-priced orders) fall back
    to the stored total.
    """
    if not snapshot.lines:
        return snapshot.stored_total_cents
    return (
        compute_subtotal(snapshot.lines)
        + snapshot.shipping_cost_cents
        + snapshot.tax_amount_cents
        - snapshot.discount_amount_cents
        + compute_surcharges(snapshot)
    )


def compute_balance_due(total_cents: int, paid_cents: int, tolerance_cents: int = DEFAULT_TOLERANCE_CENTS) -> int:
    raw = total_cents - paid_cents
    if abs(raw) <= tolerance_cents:
        return 0
    return max(0, raw)


def derive_payment_status(
    total_cents: int,
    paid_cents: int,
    current_status: str | None,
    tolerance_cents: int = DEFAULT_TOLERANCE_CENTS,
) -> str:
    if current_status == STATUS_PAID:
        return STATUS_PAID
    if compute_balance_due(total_cents, paid_cents, tolerance_cents) == 0:
        return STATUS_PAID
    if 0 < paid_cents < total_cents:
        return STATUS_PARTIAL
    if current_status in (STATUS_UNPAID, STATUS_PENDING):
        return current_status
    return STATUS_UNPAID


def compute_amount_to_pay(total_cents: int, due_cents: int, status: str) -> int:
    return due_cents if status == STATUS_PARTIAL else total_cents


def get_balance(snapshot: OrderSnapshot, tolerance_cents: int = DEFAULT_TOLERANCE_CENTS) -> BalanceSummary:
    """
    Balance summary for a snapshot. Pure: same snapshot, same answer.
    """
    total = compute_total(snapshot)
    paid = snapshot.paid_amount_cents
    due = compute_balance_due(total, paid, tolerance_cents)
    status = derive_payment_status(total, paid, snapshot.payment_status, tolerance_cents)

    warnings = []
    if status == STATUS_PAID and due > 0:
        warnings.append("marked_paid_with_balance_due")
    if paid > total + tolerance_cents:
        warnings.append("paid_exceeds_total")

    return BalanceSummary(
        total_cents=total,
        paid_cents=paid,
        due_cents=due,
        status=status,
        amount_to_pay_cents=compute_amount_to_pay(total, due, status),
        subtotal_cents=compute_subtotal(snapshot.lines),
        surcharges_cents=compute_surcharges(snapshot),
        warnings=tuple(warnings),
    )


def recompute_status(
    total_cents: int,
    paid_cents: int,
    tolerance_cents: int = DEFAULT_TOLERANCE_CENTS,
    *,
    previous_status: str | None = None,
) -> str:
    """
    Status after a money movement.

    Unlike derive_payment_status, a previous "paid" does not stick: once
    paid_amount or the total has actually changed, the amounts decide.
    """
    if previous_status == STATUS_PAID:
        previous_status = STATUS_UNPAID
    return derive_payment_status(total_cents, paid_cents, previous_status, tolerance_cents)
