import pytest

from payrecon.errors import NotFoundError, ValidationError
from payrecon.models import OrderActivity
from payrecon.services import capture_service, order_service
from payrecon.time_utils import utcnow

from conftest import lines_totaling


def test_create_order_derives_total_and_number(db_session, customer, tee):
    size_m = tee.sizes[1]
    order = order_service.create_order(
        customer.id,
        [{"description": "Tee", "sizes": [{"product_size_id": size_m.id, "quantity": 2}]}],
        charges={"shipping_cost_cents": 500, "tax_amount_cents": 240},
    )

    assert order.order_number == f"SO-{utcnow().year}000001"
    assert order.total_amount_cents == 3000 + 500 + 240
    assert order.payment_status == "unpaid"
    assert order.lines[0].product_id == tee.id
    assert order.lines[0].sizes[0].unit_price_cents == 1500
    assert order.lines[0].sizes[0].size_label == "M"

    activity = db_session.query(OrderActivity).filter_by(order_id=order.id).all()
    assert [a.activity_type for a in activity] == ["order_created"]


def test_po_surcharges_applied_when_po_rejected(db_session, customer):
    order = order_service.create_order(
        customer.id,
        lines_totaling(10000),
        charges={"po_accept": False, "handling_charges_cents": 300, "freight_charges_cents": 700},
    )
    assert order.total_amount_cents == 11000


@pytest.mark.parametrize("lines", [
    [],
    [{"description": "", "sizes": [{"quantity": 1, "unit_price_cents": 100}]}],
    [{"description": "x", "sizes": [{"quantity": 0, "unit_price_cents": 100}]}],
    [{"description": "x", "sizes": [{"quantity": 1, "unit_price_cents": -5}]}],
    [{"description": "x", "sizes": [{"quantity": 1}]}],
])
def test_invalid_lines_rejected(db_session, customer, lines):
    with pytest.raises(ValidationError):
        order_service.create_order(customer.id, lines)


def test_unknown_customer(db_session):
    with pytest.raises(NotFoundError):
        order_service.create_order(999, lines_totaling(100))


def test_editing_unpaid_order_updates_total(db_session, make_order):
    order = make_order(10000)
    result = order_service.replace_order_lines(order.id, lines_totaling(12000))

    assert result["original_total_cents"] == 10000
    assert result["new_total_cents"] == 12000
    assert result["adjustment_required"] is False
    assert result["order"]["total_amount_cents"] == 12000


def test_editing_paid_order_keeps_reconciled_total(db_session, paid_order):
    result = order_service.replace_order_lines(paid_order.id, lines_totaling(13000))

    assert result["adjustment_required"] is True
    assert result["difference_cents"] == 3000
    assert result["order"]["total_amount_cents"] == 10000

    balance = order_service.get_order_balance(paid_order.id)
    assert balance.total_cents == 13000
    assert balance.due_cents == 3000


def test_void_requires_reason_and_nothing_paid(db_session, make_order, paid_order):
    order = make_order(5000)
    with pytest.raises(ValidationError):
        order_service.void_order(order.id, reason="")

    voided = order_service.void_order(order.id, reason="Customer cancelled")
    assert voided.is_void
    assert voided.voided_at is not None

    with pytest.raises(ValidationError):
        order_service.void_order(order.id, reason="again")
    with pytest.raises(ValidationError):
        order_service.void_order(paid_order.id, reason="Too late")


def test_void_order_cannot_take_payment(db_session, make_order):
    order = make_order(5000)
    order_service.void_order(order.id, reason="Duplicate")
    with pytest.raises(ValidationError):
        capture_service.capture(order.id, {"type": "manual", "notes": "cash"}, 5000)
