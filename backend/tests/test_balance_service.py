from payrecon.services.balance_service import (
    LineSnapshot,
    OrderSnapshot,
    SizeSnapshot,
    STATUS_PAID,
    STATUS_PARTIAL,
    STATUS_PENDING,
    STATUS_UNPAID,
    compute_balance_due,
    compute_total,
    derive_payment_status,
    get_balance,
    recompute_status,
)


def _snapshot(prices_and_qty, **kwargs):
    line = LineSnapshot(sizes=tuple(SizeSnapshot(quantity=q, unit_price_cents=p) for p, q in prices_and_qty))
    return OrderSnapshot(lines=(line,), **kwargs)


def test_total_sums_sizes_and_charges():
    snap = _snapshot(
        [(1500, 2), (2000, 1)],
        shipping_cost_cents=500,
        tax_amount_cents=400,
        discount_amount_cents=1000,
    )
    assert compute_total(snap) == 3000 + 2000 + 500 + 400 - 1000


def test_po_surcharges_only_when_po_not_accepted():
    base = dict(handling_charges_cents=250, freight_charges_cents=750)
    assert compute_total(_snapshot([(1000, 1)], po_accept=False, **base)) == 2000
    assert compute_total(_snapshot([(1000, 1)], po_accept=True, **base)) == 1000
    assert compute_total(_snapshot([(1000, 1)], po_accept=None, **base)) == 1000


def test_orders_without_lines_use_stored_total():
    assert compute_total(OrderSnapshot(stored_total_cents=4321)) == 4321


def test_balance_due_clamps_and_honours_tolerance():
    assert compute_balance_due(10000, 4000) == 6000
    assert compute_balance_due(10000, 12000) == 0
    assert compute_balance_due(10000, 9999, tolerance_cents=1) == 0
    assert compute_balance_due(10000, 9998, tolerance_cents=1) == 2


def test_partial_payment_reports_remaining_amount_to_pay():
    balance = get_balance(_snapshot([(10000, 1)], paid_amount_cents=4000))
    assert balance.status == STATUS_PARTIAL
    assert balance.due_cents == 6000
    assert balance.amount_to_pay_cents == 6000


def test_unpaid_order_amount_to_pay_is_total():
    balance = get_balance(_snapshot([(10000, 1)], payment_status=STATUS_PENDING))
    assert balance.status == STATUS_PENDING
    assert balance.amount_to_pay_cents == 10000
    assert balance.due_cents == 10000


def test_manually_marked_paid_keeps_status_and_reports_due():
    balance = get_balance(_snapshot([(10000, 1)], paid_amount_cents=2000, payment_status=STATUS_PAID))
    assert balance.status == STATUS_PAID
    assert balance.due_cents == 8000
    assert "marked_paid_with_balance_due" in balance.warnings


def test_get_balance_is_pure():
    snap = _snapshot([(1234, 3)], paid_amount_cents=100)
    assert get_balance(snap) == get_balance(snap)


def test_derive_status_rules():
    assert derive_payment_status(10000, 0, None) == STATUS_UNPAID
    assert derive_payment_status(10000, 0, STATUS_PENDING) == STATUS_PENDING
    assert derive_payment_status(10000, 1, STATUS_UNPAID) == STATUS_PARTIAL
    assert derive_payment_status(10000, 10000, STATUS_UNPAID) == STATUS_PAID
    assert derive_payment_status(0, 0, STATUS_UNPAID) == STATUS_PAID


def test_recompute_status_does_not_keep_stale_paid():
    # Total went up after the order was fully paid
    assert recompute_status(13000, 10000, previous_status=STATUS_PAID) == STATUS_PARTIAL
    assert recompute_status(7000, 7000, previous_status=STATUS_PAID) == STATUS_PAID
