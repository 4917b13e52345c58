import pytest

from payrecon.errors import (
    CaptureOutcomeUnknown,
    GatewayTimeout,
    LedgerWriteFailure,
    PaymentDeclined,
    ValidationError,
)
from payrecon.models import (
    AccountTransaction,
    Adjustment,
    CreditMemo,
    GatewayAttempt,
    Order,
    PaymentTransaction,
    ReconciliationItem,
)
from payrecon.services import adjustment_service, capture_service, order_service
from payrecon.services.adjustment_service import (
    CollectPayment,
    IssueCreditMemo,
    ProcessRefund,
    SendPaymentLink,
    UseCredit,
    fulfill_payment_link,
    get_adjustment_options,
    list_adjustments,
    parse_adjustment_action,
    resolve_adjustment,
)
from payrecon.services.gateway_client import GatewayResult, RefundResult
from payrecon.services.ledger_store import get_customer, get_order, store_credit_balance
from payrecon.services.reconciliation_service import find_blocking_attempt, resolve_gateway_attempt

from conftest import BILLING, VALID_CARD, lines_totaling


@pytest.fixture
def raised_order(paid_order):
    """The $100 paid order edited up to $130."""
    order_service.replace_order_lines(paid_order.id, lines_totaling(13000))
    return paid_order


@pytest.fixture
def lowered_order(paid_order):
    """The $100 paid order edited down to $70."""
    order_service.replace_order_lines(paid_order.id, lines_totaling(7000))
    return paid_order


def _options_by_name(options):
    return {option["action"]: option for option in options["options"]}


class TestParseAction:
    def test_known_actions(self):
        assert parse_adjustment_action("collect_payment", {"saved_method_id": 3}) == CollectPayment(saved_method_id=3)
        assert parse_adjustment_action("send_payment_link", {"email": " a@b.c "}) == SendPaymentLink(email="a@b.c")
        assert parse_adjustment_action("process_refund", {"acknowledge_unsafe": True}) == ProcessRefund(acknowledge_unsafe=True)
        assert isinstance(parse_adjustment_action("use_credit"), UseCredit)

    def test_unknown_action(self):
        with pytest.raises(ValidationError) as exc:
            parse_adjustment_action("write_off")
        assert "issue_credit_memo" in exc.value.details["allowed"]

    def test_saved_method_id_must_be_integer(self):
        with pytest.raises(ValidationError):
            parse_adjustment_action("collect_payment", {"saved_method_id": "3"})


class TestIncrease:
    def test_collect_payment_charges_saved_card(self, db_session, raised_order, saved_method, gateway):
        result = resolve_adjustment(raised_order.id, CollectPayment(saved_method_id=saved_method.id), reason="Added rush")

        assert result.difference_cents == 3000
        assert result.total_amount_cents == 13000
        assert result.paid_amount_cents == 13000
        assert result.payment_status == "paid"
        assert result.adjustment["adjustment_type"] == "additional_payment"
        assert result.adjustment["payment_status"] == "completed"
        assert result.adjustment["adjustment_number"].startswith("ADJ-")

        assert gateway.calls[-1][:3] == ("charge_saved_method", 3000, "PP-200")
        txn = db_session.get(PaymentTransaction, result.payment_transaction_id)
        assert txn.transaction_type == "additional_payment"
        assert txn.invoice_id is not None

    def test_collect_payment_requires_saved_method(self, db_session, raised_order, gateway):
        with pytest.raises(ValidationError):
            resolve_adjustment(raised_order.id, CollectPayment())
        assert [call[0] for call in gateway.calls] == ["authorize_capture"]

    def test_wrong_direction_rejected(self, db_session, raised_order):
        with pytest.raises(ValidationError) as exc:
            resolve_adjustment(raised_order.id, IssueCreditMemo())
        assert exc.value.details["difference_cents"] == 3000
        assert db_session.query(Adjustment).count() == 0

    def test_payment_link_then_fulfilment(self, db_session, raised_order, gateway, notifications):
        result = resolve_adjustment(raised_order.id, SendPaymentLink())

        assert result.adjustment["payment_status"] == "pending"
        assert result.payment_status == "partial_paid"
        assert result.paid_amount_cents == 10000
        assert result.total_amount_cents == 13000
        sent = [payload for event, payload in notifications if event == "payment_link_sent"]
        assert sent[0]["email"] == "jane@example.com"
        assert sent[0]["amount_cents"] == 3000

        done = fulfill_payment_link(result.adjustment["id"], dict(VALID_CARD), billing=dict(BILLING))

        assert done["receipt"]["payment_status"] == "paid"
        assert done["receipt"]["transaction_type"] == "additional_payment"
        assert done["adjustment"]["fulfills_adjustment_id"] == result.adjustment["id"]
        assert done["adjustment"]["payment_status"] == "completed"
        assert get_order(raised_order.id).paid_amount_cents == 13000

        # The pending row is left as it was
        pending = db_session.get(Adjustment, result.adjustment["id"])
        assert pending.payment_status == "pending"

        with pytest.raises(ValidationError):
            fulfill_payment_link(result.adjustment["id"], dict(VALID_CARD), billing=dict(BILLING))

    def test_use_credit_draws_credit_line(self, db_session, raised_order, customer):
        result = resolve_adjustment(raised_order.id, UseCredit())

        assert result.payment_status == "paid"
        assert result.paid_amount_cents == 13000
        assert result.adjustment["payment_method"] == "credit"
        assert get_customer(customer.id).credit_used_cents == 3000

    def test_use_credit_insufficient(self, db_session, raised_order, customer):
        customer.credit_limit_cents = 1000
        db_session.commit()

        with pytest.raises(ValidationError) as exc:
            resolve_adjustment(raised_order.id, UseCredit())
        assert exc.value.details == {"available_credit_cents": 1000, "required_cents": 3000}
        assert get_order(raised_order.id).total_amount_cents == 10000


class TestDecrease:
    def test_refund_against_original_capture(self, db_session, lowered_order, gateway):
        result = resolve_adjustment(lowered_order.id, ProcessRefund(), reason="Removed item")

        assert result.difference_cents == -3000
        assert result.paid_amount_cents == 7000
        assert result.payment_status == "paid"
        assert result.refund_id is not None
        assert result.warnings == []
        assert gateway.calls[-1] == ("refund", 3000, "60000001", "1111")

        refund = db_session.get(PaymentTransaction, result.payment_transaction_id)
        assert refund.transaction_type == "refund"
        assert refund.status == "completed"
        debit = db_session.query(AccountTransaction).filter_by(entry_type="debit").one()
        assert debit.amount_cents == 3000
        assert debit.reference_type == "refund"

    def test_credit_memo_grants_store_credit(self, db_session, lowered_order, customer):
        result = resolve_adjustment(lowered_order.id, IssueCreditMemo())

        assert result.credit_memo["amount_cents"] == 3000
        assert result.credit_memo["memo_number"].startswith("CM-")
        assert result.paid_amount_cents == 10000
        assert result.total_amount_cents == 7000
        assert store_credit_balance(customer.id) == 3000
        assert db_session.query(CreditMemo).count() == 1

    def test_refund_without_original_transaction_needs_acknowledgement(self, db_session, make_order, gateway):
        order = make_order(10000)
        capture_service.capture(order.id, {"type": "manual", "notes": "Check #881"}, 10000)
        order_service.replace_order_lines(order.id, lines_totaling(7000))

        with pytest.raises(ValidationError) as exc:
            resolve_adjustment(order.id, ProcessRefund())
        assert exc.value.details["degraded"] is True

        result = resolve_adjustment(order.id, ProcessRefund(acknowledge_unsafe=True))
        assert result.adjustment["payment_method"] == "manual"
        assert result.adjustment["payment_status"] == "pending"
        assert result.refund_id is None
        assert "refund_pending" in result.warnings
        assert result.paid_amount_cents == 7000
        assert gateway.calls == []


class TestGuards:
    def test_no_difference(self, db_session, paid_order):
        with pytest.raises(ValidationError):
            resolve_adjustment(paid_order.id, UseCredit())

    def test_nothing_paid(self, db_session, make_order):
        order = make_order(10000)
        order_service.replace_order_lines(order.id, lines_totaling(12000))
        with pytest.raises(ValidationError):
            resolve_adjustment(order.id, UseCredit(), original_amount_cents=10000)

    def test_explicit_amounts_override_order(self, db_session, paid_order):
        result = resolve_adjustment(
            paid_order.id, IssueCreditMemo(), original_amount_cents=10000, new_amount_cents=9500,
        )
        assert result.difference_cents == -500
        assert result.total_amount_cents == 9500


class TestOptions:
    def test_options_for_increase(self, db_session, raised_order, saved_method):
        options = get_adjustment_options(raised_order.id)

        assert options["direction"] == "increase"
        assert options["difference_cents"] == 3000
        by_name = _options_by_name(options)
        assert by_name["collect_payment"]["available"] is True
        assert by_name["collect_payment"]["saved_methods"][0]["card_last_four"] == "4242"
        assert by_name["send_payment_link"]["available"] is True
        assert by_name["use_credit"]["available"] is True
        assert by_name["issue_credit_memo"]["reason"] == "wrong_direction"
        assert by_name["process_refund"]["reason"] == "wrong_direction"

    def test_options_for_decrease(self, db_session, lowered_order):
        by_name = _options_by_name(get_adjustment_options(lowered_order.id))

        assert by_name["collect_payment"]["available"] is False
        assert by_name["issue_credit_memo"]["available"] is True
        assert by_name["process_refund"]["available"] is True
        assert by_name["process_refund"]["degraded"] is False
        assert by_name["process_refund"]["original_transaction_id"] == "60000001"

    def test_gateway_down_blocks_gateway_actions(self, db_session, lowered_order, gateway):
        gateway.configured = False
        by_name = _options_by_name(get_adjustment_options(lowered_order.id))
        assert by_name["process_refund"]["reason"] == "gateway_not_configured"
        assert by_name["issue_credit_memo"]["available"] is True

    def test_unpaid_order_has_no_options(self, db_session, make_order):
        order = make_order(10000)
        options = get_adjustment_options(order.id, new_amount_cents=12000)
        assert all(option["reason"] == "no_payment" for option in options["options"])


def test_list_adjustments_in_order(db_session, raised_order):
    first = resolve_adjustment(raised_order.id, SendPaymentLink())
    second = resolve_adjustment(raised_order.id, UseCredit(), original_amount_cents=13000, new_amount_cents=13500)

    rows = list_adjustments(raised_order.id)
    assert [row.id for row in rows] == [first.adjustment["id"], second.adjustment["id"]]


def _broken(*args, **kwargs):
    raise RuntimeError("database gone")


def _attempt(db_session, attempt_type):
    return db_session.query(GatewayAttempt).filter_by(attempt_type=attempt_type).one()


class TestStaleTotal:
    def test_original_total_must_match_stored_total(self, db_session, raised_order):
        resolve_adjustment(raised_order.id, SendPaymentLink())

        with pytest.raises(ValidationError) as exc:
            resolve_adjustment(raised_order.id, UseCredit(), original_amount_cents=10000, new_amount_cents=13000)
        assert exc.value.details == {"expected_total_cents": 10000, "stored_total_cents": 13000}
        assert db_session.query(Adjustment).count() == 1
        assert get_order(raised_order.id).paid_amount_cents == 10000

    def test_total_edited_during_gateway_call_is_queued_not_applied(
        self, db_session, raised_order, saved_method, gateway, monkeypatch,
    ):
        charge = gateway.charge_saved_method

        def charge_while_edited(method, amount_cents, **kwargs):
            db_session.query(Order).filter_by(id=raised_order.id).update({"total_amount_cents": 15000})
            db_session.commit()
            return charge(method, amount_cents, **kwargs)

        monkeypatch.setattr(gateway, "charge_saved_method", charge_while_edited)

        result = resolve_adjustment(raised_order.id, CollectPayment(saved_method_id=saved_method.id))

        assert result.reconciliation_pending is True
        assert db_session.query(Adjustment).count() == 0
        order = get_order(raised_order.id)
        assert (order.total_amount_cents, order.paid_amount_cents) == (15000, 10000)
        item = db_session.get(ReconciliationItem, result.reconciliation_item_id)
        assert item.kind == "ledger_write_failed"
        assert "changed" in item.error


class TestCollectPaymentGatewayOutcomes:
    def test_decline_writes_nothing(self, db_session, raised_order, saved_method, gateway):
        gateway.queue(GatewayResult(success=False, error_code="2", error="This transaction has been declined."))

        with pytest.raises(PaymentDeclined):
            resolve_adjustment(raised_order.id, CollectPayment(saved_method_id=saved_method.id))

        assert _attempt(db_session, "additional_payment").status == "declined"
        assert db_session.query(Adjustment).count() == 0
        order = get_order(raised_order.id)
        assert (order.total_amount_cents, order.paid_amount_cents) == (10000, 10000)

    def test_timeout_then_confirmed_writes_the_adjustment(self, db_session, raised_order, saved_method, gateway):
        gateway.queue(GatewayTimeout())
        with pytest.raises(GatewayTimeout):
            resolve_adjustment(
                raised_order.id, CollectPayment(saved_method_id=saved_method.id),
                reason="Added rush", processed_by="clerk",
            )
        attempt = _attempt(db_session, "additional_payment")
        assert attempt.status == "unknown"
        assert attempt.context["new_amount_cents"] == 13000
        item = db_session.query(ReconciliationItem).filter_by(kind="outcome_unknown").one()

        # Nothing else may move money on the order until the attempt is resolved
        with pytest.raises(CaptureOutcomeUnknown):
            resolve_adjustment(raised_order.id, UseCredit())
        options = get_adjustment_options(raised_order.id)
        assert {option["reason"] for option in options["options"]} == {"gateway_attempt_unresolved"}

        resolve_gateway_attempt(
            attempt.id, "captured", note="Settled in portal", resolved_by="ops",
            gateway_transaction_id="60009999", auth_code="ZZ1",
        )

        order = get_order(raised_order.id)
        assert (order.total_amount_cents, order.paid_amount_cents) == (13000, 13000)
        assert order.payment_status == "paid"
        adjustment = db_session.query(Adjustment).one()
        assert adjustment.adjustment_type == "additional_payment"
        assert adjustment.payment_status == "completed"
        assert adjustment.reason == "Added rush"
        assert adjustment.processed_by == "clerk"
        txn = db_session.get(PaymentTransaction, adjustment.payment_transaction_id)
        assert txn.gateway_transaction_id == "60009999"
        assert txn.last_four == "4242"
        assert db_session.get(ReconciliationItem, item.id).status == "resolved"
        assert db_session.get(GatewayAttempt, attempt.id).status == "captured"
        assert [call[0] for call in gateway.calls].count("charge_saved_method") == 1

        # Re-entering the adjustment finds nothing left to settle
        with pytest.raises(ValidationError):
            resolve_adjustment(raised_order.id, CollectPayment(saved_method_id=saved_method.id))

    def test_ledger_failure_is_queued(self, db_session, raised_order, saved_method, gateway, monkeypatch):
        monkeypatch.setattr(adjustment_service, "record_account_transaction", _broken)

        result = resolve_adjustment(raised_order.id, CollectPayment(saved_method_id=saved_method.id))

        assert result.reconciliation_pending is True
        item = db_session.get(ReconciliationItem, result.reconciliation_item_id)
        assert item.kind == "ledger_write_failed"
        assert item.payload["action"] == "collect_payment"
        txn = db_session.get(PaymentTransaction, result.payment_transaction_id)
        assert txn.transaction_type == "additional_payment"
        assert _attempt(db_session, "additional_payment").status == "captured"
        assert db_session.query(Adjustment).count() == 0
        assert get_order(raised_order.id).paid_amount_cents == 10000


class TestRefundGatewayOutcomes:
    def test_decline_writes_nothing(self, db_session, lowered_order, gateway):
        gateway.queue(RefundResult(success=False, error_code="54", error="Transaction not eligible for credit."))

        with pytest.raises(PaymentDeclined):
            resolve_adjustment(lowered_order.id, ProcessRefund())

        assert _attempt(db_session, "refund").status == "declined"
        assert db_session.query(PaymentTransaction).filter_by(transaction_type="refund").count() == 0
        assert get_order(lowered_order.id).total_amount_cents == 10000

    def test_timeout_then_confirmed_writes_the_refund(self, db_session, lowered_order, gateway):
        gateway.queue(GatewayTimeout())
        with pytest.raises(GatewayTimeout):
            resolve_adjustment(lowered_order.id, ProcessRefund(), reason="Removed item")
        attempt = _attempt(db_session, "refund")
        assert attempt.context["original_transaction_id"] == "60000001"

        resolve_gateway_attempt(attempt.id, "captured", note="Refund visible in portal", gateway_transaction_id="R-555")

        order = get_order(lowered_order.id)
        assert (order.total_amount_cents, order.paid_amount_cents) == (7000, 7000)
        adjustment = db_session.query(Adjustment).one()
        assert adjustment.adjustment_type == "partial_refund"
        assert adjustment.refund_id == "R-555"
        refund = db_session.query(PaymentTransaction).filter_by(transaction_type="refund").one()
        assert refund.gateway_transaction_id == "R-555"
        debit = db_session.query(AccountTransaction).filter_by(entry_type="debit").one()
        assert debit.amount_cents == 3000
        assert db_session.query(ReconciliationItem).filter_by(status="open").count() == 0
        assert [call[0] for call in gateway.calls].count("refund") == 1

    def test_confirm_fails_while_total_moved_and_item_stays_open(self, db_session, lowered_order, gateway):
        gateway.queue(GatewayTimeout())
        with pytest.raises(GatewayTimeout):
            resolve_adjustment(lowered_order.id, ProcessRefund())
        attempt = _attempt(db_session, "refund")
        db_session.query(Order).filter_by(id=lowered_order.id).update({"total_amount_cents": 9000})
        db_session.commit()

        with pytest.raises(ValidationError):
            resolve_gateway_attempt(attempt.id, "captured", note="Refund visible", gateway_transaction_id="R-556")

        assert db_session.get(GatewayAttempt, attempt.id).status == "unknown"
        assert db_session.query(ReconciliationItem).filter_by(status="open").count() == 1
        assert db_session.query(Adjustment).count() == 0

    def test_ledger_failure_is_queued(self, db_session, lowered_order, gateway, monkeypatch):
        monkeypatch.setattr(adjustment_service, "record_account_transaction", _broken)

        result = resolve_adjustment(lowered_order.id, ProcessRefund())

        assert result.reconciliation_pending is True
        txn = db_session.get(PaymentTransaction, result.payment_transaction_id)
        assert txn.transaction_type == "refund"
        assert db_session.get(ReconciliationItem, result.reconciliation_item_id).payload["action"] == "process_refund"
        assert get_order(lowered_order.id).paid_amount_cents == 10000

    def test_unrecordable_refund_raises_and_keeps_order_blocked(self, db_session, lowered_order, gateway, monkeypatch):
        monkeypatch.setattr(adjustment_service, "record_account_transaction", _broken)
        monkeypatch.setattr(adjustment_service, "record_payment_transaction", _broken)

        with pytest.raises(LedgerWriteFailure) as exc:
            resolve_adjustment(lowered_order.id, ProcessRefund())

        assert exc.value.details["amount_cents"] == 3000
        assert db_session.query(PaymentTransaction).filter_by(transaction_type="refund").count() == 0
        assert find_blocking_attempt(lowered_order.id) is not None

    def test_refund_attempt_without_context_cannot_be_confirmed(self, db_session, lowered_order):
        attempt = GatewayAttempt(order_id=lowered_order.id, attempt_type="refund", method="card_refund",
                                 amount_cents=3000, status="unknown")
        db_session.add(attempt)
        db_session.commit()

        with pytest.raises(ValidationError):
            resolve_gateway_attempt(attempt.id, "captured", note="Found it", gateway_transaction_id="R-1")
        assert db_session.get(GatewayAttempt, attempt.id).status == "unknown"


class TestPaymentLinkGatewayOutcomes:
    def test_decline_leaves_link_open(self, db_session, raised_order, gateway):
        link = resolve_adjustment(raised_order.id, SendPaymentLink())
        gateway.queue(GatewayResult(success=False, error_code="2", error="This transaction has been declined."))

        with pytest.raises(PaymentDeclined):
            fulfill_payment_link(link.adjustment["id"], dict(VALID_CARD), billing=dict(BILLING))

        assert db_session.query(Adjustment).filter_by(fulfills_adjustment_id=link.adjustment["id"]).count() == 0
        assert get_order(raised_order.id).paid_amount_cents == 10000

        done = fulfill_payment_link(link.adjustment["id"], dict(VALID_CARD), billing=dict(BILLING))
        assert done["adjustment"]["fulfills_adjustment_id"] == link.adjustment["id"]

    def test_timeout_then_confirmed_completes_the_link(self, db_session, raised_order, gateway):
        link = resolve_adjustment(raised_order.id, SendPaymentLink())
        gateway.queue(GatewayTimeout())
        with pytest.raises(GatewayTimeout):
            fulfill_payment_link(link.adjustment["id"], dict(VALID_CARD), billing=dict(BILLING))
        attempt = _attempt(db_session, "additional_payment")

        resolve_gateway_attempt(attempt.id, "captured", note="Paid per portal", gateway_transaction_id="60007777")

        completed = db_session.query(Adjustment).filter_by(fulfills_adjustment_id=link.adjustment["id"]).one()
        assert completed.payment_status == "completed"
        assert completed.difference_amount_cents == 3000
        txn = db_session.get(PaymentTransaction, completed.payment_transaction_id)
        assert txn.gateway_transaction_id == "60007777"
        assert get_order(raised_order.id).paid_amount_cents == 13000

        with pytest.raises(ValidationError):
            fulfill_payment_link(link.adjustment["id"], dict(VALID_CARD), billing=dict(BILLING))

    def test_ledger_failure_is_queued(self, db_session, raised_order, gateway, monkeypatch):
        link = resolve_adjustment(raised_order.id, SendPaymentLink())
        monkeypatch.setattr(capture_service, "record_account_transaction", _broken)

        done = fulfill_payment_link(link.adjustment["id"], dict(VALID_CARD), billing=dict(BILLING))

        assert done["receipt"]["reconciliation_pending"] is True
        assert done["adjustment"] is None
        item = db_session.get(ReconciliationItem, done["receipt"]["reconciliation_item_id"])
        assert item.kind == "ledger_write_failed"
        assert get_order(raised_order.id).paid_amount_cents == 10000
