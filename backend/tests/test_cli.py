import pytest

from payrecon.errors import GatewayTimeout
from payrecon.models import Customer, GatewayAttempt, ProductSize
from payrecon.services import capture_service, sequence_service

from conftest import BILLING, VALID_CARD


def test_seed_demo_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["system", "seed-demo"])
    assert result.exit_code == 0
    assert "PASS Created demo customer" in result.output

    result = runner.invoke(args=["system", "seed-demo"])
    assert "already exists" in result.output
    assert db_session.query(Customer).filter_by(email="demo@payrecon.local").count() == 1
    assert db_session.query(ProductSize).count() == 3


def test_sequences_seed_and_show(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["sequences", "show"])
    assert "No counters yet" in result.output

    result = runner.invoke(args=["sequences", "seed", "--prefix", "INV", "--next", "1500"])
    assert result.exit_code == 0
    assert "PASS INV" in result.output

    result = runner.invoke(args=["sequences", "seed", "--prefix", "INV", "--next", "10"])
    assert result.exit_code == 1
    assert "FAIL" in result.output

    result = runner.invoke(args=["sequences", "show"])
    assert sequence_service.format_document_number("INV", 1500) in result.output


def test_resolve_unknown_attempt(app, db_session, make_order, gateway):
    order = make_order(10000)
    gateway.queue(GatewayTimeout())
    with pytest.raises(GatewayTimeout):
        capture_service.capture(order.id, dict(VALID_CARD), 10000, billing=dict(BILLING))
    attempt_id = db_session.query(GatewayAttempt.id).scalar()
    runner = app.test_cli_runner()

    result = runner.invoke(args=["reconciliation", "list"])
    assert "outcome_unknown" in result.output

    result = runner.invoke(args=["reconciliation", "attempts", "--order-id", str(order.id)])
    assert "unknown" in result.output

    result = runner.invoke(args=[
        "reconciliation", "resolve-attempt", str(attempt_id), "--outcome", "captured", "--note", "Found it",
    ])
    assert result.exit_code == 1
    assert "gateway_transaction_id is required" in result.output

    result = runner.invoke(args=[
        "reconciliation", "resolve-attempt", str(attempt_id),
        "--outcome", "failed", "--note", "Not in merchant portal", "--by", "ops",
    ])
    assert result.exit_code == 0
    assert "resolved as failed" in result.output

    result = runner.invoke(args=["reconciliation", "list"])
    assert "No reconciliation items." in result.output
