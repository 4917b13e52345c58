"""
HTTP-level tests: status codes and response shapes of the API blueprints.
"""

from payrecon.errors import GatewayTimeout
from payrecon.services.gateway_client import GatewayResult

from conftest import BILLING, VALID_CARD, lines_totaling


def _create_order(client, customer, cents=10000, **extra):
    response = client.post("/api/orders", json={"customer_id": customer.id, "lines": lines_totaling(cents), **extra})
    assert response.status_code == 201
    return response.get_json()["order"]


def _card_capture(client, order_id, amount_cents):
    return client.post(
        f"/api/payments/orders/{order_id}/capture",
        json={"amount_cents": amount_cents, "payment_method": dict(VALID_CARD), "billing": dict(BILLING)},
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "healthy"
    assert body["checks"]["reconciliation"]["details"] == {"open_items": 0, "unresolved_attempts": 0}


def test_health_degraded_without_gateway(client, gateway):
    gateway.configured = False
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["checks"]["gateway"]["status"] == "degraded"


class TestOrderRoutes:
    def test_create_and_get(self, client, customer):
        order = _create_order(client, customer, 10000, shipping_cost_cents=500)
        assert order["total_amount_cents"] == 10500
        assert order["payment_status"] == "unpaid"

        response = client.get(f"/api/orders/{order['id']}")
        assert response.status_code == 200
        assert "invoice" not in response.get_json()

    def test_create_requires_customer(self, client):
        response = client.post("/api/orders", json={"lines": lines_totaling(100)})
        assert response.status_code == 400

    def test_create_unknown_customer(self, client):
        response = client.post("/api/orders", json={"customer_id": 404, "lines": lines_totaling(100)})
        assert response.status_code == 404

    def test_invalid_lines(self, client, customer):
        response = client.post("/api/orders", json={"customer_id": customer.id, "lines": []})
        assert response.status_code == 400
        assert "error" in response.get_json()

    def test_missing_order(self, client):
        assert client.get("/api/orders/999").status_code == 404
        assert client.get("/api/orders/999/balance").status_code == 404

    def test_edit_after_payment_reports_adjustment(self, client, customer):
        order = _create_order(client, customer)
        assert _card_capture(client, order["id"], 10000).status_code == 201

        response = client.put(f"/api/orders/{order['id']}/lines", json={"lines": lines_totaling(12500)})
        assert response.status_code == 200
        assert response.get_json()["adjustment_required"] is True

        balance = client.get(f"/api/orders/{order['id']}/balance").get_json()
        assert balance["adjustment_required"] is True
        assert balance["stored_total_cents"] == 10000
        assert balance["balance"]["due_cents"] == 2500
        assert balance["collectable"]["due_cents"] == 0

    def test_void(self, client, customer):
        order = _create_order(client, customer)
        assert client.post(f"/api/orders/{order['id']}/void", json={}).status_code == 400
        response = client.post(f"/api/orders/{order['id']}/void", json={"reason": "Duplicate"})
        assert response.status_code == 200
        assert response.get_json()["order"]["is_void"] is True


class TestPaymentRoutes:
    def test_capture_returns_receipt(self, client, customer):
        order = _create_order(client, customer)
        response = _card_capture(client, order["id"], 10000)

        assert response.status_code == 201
        receipt = response.get_json()["receipt"]
        assert receipt["payment_status"] == "paid"
        assert receipt["invoice_created"] is True
        assert receipt["reconciliation_pending"] is False

        order_body = client.get(f"/api/orders/{order['id']}").get_json()
        assert order_body["invoice"]["invoice_number"] == receipt["invoice_number"]

        activity = client.get(f"/api/orders/{order['id']}/activity").get_json()["activity"]
        assert {"order_created", "payment_received", "invoice_created"} <= {a["activity_type"] for a in activity}

    def test_decline_is_402(self, client, customer, gateway):
        order = _create_order(client, customer)
        gateway.queue(GatewayResult(success=False, error_code="2", error="Card declined. Please try a different card. (2)"))

        response = _card_capture(client, order["id"], 10000)
        assert response.status_code == 402
        body = response.get_json()
        assert body["code"] == "2"
        assert body["error"].startswith("Card declined")

    def test_overpayment_is_400(self, client, customer):
        order = _create_order(client, customer)
        assert _card_capture(client, order["id"], 20000).status_code == 400

    def test_timeout_then_conflict(self, client, customer, gateway):
        order = _create_order(client, customer)
        gateway.queue(GatewayTimeout())

        response = _card_capture(client, order["id"], 10000)
        assert response.status_code == 504
        assert response.get_json()["outcome_unknown"] is True

        response = _card_capture(client, order["id"], 10000)
        assert response.status_code == 409
        attempt_id = response.get_json()["details"]["gateway_attempt_id"]

        items = client.get("/api/reconciliation").get_json()["items"]
        assert [item["kind"] for item in items] == ["outcome_unknown"]

        response = client.post(
            f"/api/reconciliation/attempts/{attempt_id}/resolve",
            json={"outcome": "captured", "note": "Settled in portal", "gateway_transaction_id": "60112233"},
        )
        assert response.status_code == 200
        assert response.get_json()["attempt"]["status"] == "captured"
        assert client.get("/api/reconciliation").get_json()["items"] == []

        balance = client.get(f"/api/orders/{order['id']}/balance").get_json()
        assert balance["balance"]["status"] == "paid"

    def test_gateway_not_configured_is_503(self, client, customer, gateway):
        gateway.configured = False
        order = _create_order(client, customer)
        assert _card_capture(client, order["id"], 10000).status_code == 503

    def test_checkout(self, client, customer):
        response = client.post("/api/payments/checkout", json={
            "customer_id": customer.id,
            "lines": lines_totaling(4000),
            "tax_amount_cents": 320,
            "payment_method": {"type": "manual", "notes": "Cash at counter"},
        })
        assert response.status_code == 201
        body = response.get_json()
        assert body["order"]["total_amount_cents"] == 4320
        assert body["receipt"]["payment_status"] == "paid"
        assert body["receipt"]["gateway_transaction_id"] is None

        transactions = client.get(f"/api/payments/transactions?order_id={body['order']['id']}").get_json()["transactions"]
        assert len(transactions) == 1
        assert transactions[0]["method"] == "manual"


class TestAdjustmentRoutes:
    def test_credit_memo_flow(self, client, customer):
        order = _create_order(client, customer)
        _card_capture(client, order["id"], 10000)
        client.put(f"/api/orders/{order['id']}/lines", json={"lines": lines_totaling(8000)})

        options = client.get(f"/api/orders/{order['id']}/adjustments/options").get_json()
        assert options["direction"] == "decrease"

        response = client.post(
            f"/api/orders/{order['id']}/adjustments",
            json={"action": "issue_credit_memo", "reason": "Item removed"},
        )
        assert response.status_code == 201
        result = response.get_json()
        assert result["credit_memo"]["amount_cents"] == 2000
        assert result["adjustment"]["reason"] == "Item removed"

        adjustments = client.get(f"/api/orders/{order['id']}/adjustments").get_json()["adjustments"]
        assert len(adjustments) == 1

        credit = client.get(f"/api/customers/{customer.id}/credit").get_json()
        assert credit["store_credit_cents"] == 2000
        assert credit["account_balance_cents"] == 12000

    def test_credit_memo_redemption(self, client, customer):
        order = _create_order(client, customer)
        _card_capture(client, order["id"], 10000)
        client.put(f"/api/orders/{order['id']}/lines", json={"lines": lines_totaling(8000)})
        client.post(f"/api/orders/{order['id']}/adjustments", json={"action": "issue_credit_memo"})

        memos = client.get(f"/api/customers/{customer.id}/credit-memos").get_json()["credit_memos"]
        assert [m["balance_cents"] for m in memos] == [2000]

        next_order = _create_order(client, customer, cents=5000)
        url = f"/api/payments/orders/{next_order['id']}/credit-memo"
        assert client.post(url, json={}).status_code == 400

        response = client.post(url, json={"credit_memo_id": memos[0]["id"], "processed_by": "clerk"})
        assert response.status_code == 201
        receipt = response.get_json()["receipt"]
        assert receipt["amount_cents"] == 2000
        assert receipt["method"] == "credit_memo"
        assert receipt["balance_due_cents"] == 3000

        assert client.post(url, json={"credit_memo_id": memos[0]["id"]}).status_code == 400
        credit = client.get(f"/api/customers/{customer.id}/credit").get_json()
        assert credit["store_credit_cents"] == 0
        assert credit["credit_memos"] == []
        everything = client.get(f"/api/customers/{customer.id}/credit-memos?all=1").get_json()["credit_memos"]
        assert everything[0]["status"] == "applied"

    def test_invalid_action_is_400(self, client, customer):
        order = _create_order(client, customer)
        response = client.post(f"/api/orders/{order['id']}/adjustments", json={"action": "nope"})
        assert response.status_code == 400
        assert "allowed" in response.get_json()["details"]

    def test_payment_link_fulfilment(self, client, customer):
        order = _create_order(client, customer)
        _card_capture(client, order["id"], 10000)
        client.put(f"/api/orders/{order['id']}/lines", json={"lines": lines_totaling(11000)})

        response = client.post(f"/api/orders/{order['id']}/adjustments", json={"action": "send_payment_link"})
        assert response.status_code == 201
        adjustment_id = response.get_json()["adjustment"]["id"]

        response = client.post(
            f"/api/adjustments/{adjustment_id}/fulfill",
            json={"payment_method": {"type": "manual", "notes": "Paid via link"}},
        )
        assert response.status_code == 201
        assert response.get_json()["receipt"]["payment_status"] == "paid"

    def test_missing_adjustment(self, client):
        response = client.post("/api/adjustments/999/fulfill", json={"payment_method": {"type": "manual", "notes": "x"}})
        assert response.status_code == 404


def test_customer_credit_missing(client):
    assert client.get("/api/customers/999/credit").status_code == 404


def test_resolve_reconciliation_item_requires_note(client, customer, monkeypatch):
    from payrecon.services import capture_service

    def broken(*args, **kwargs):
        raise RuntimeError("invoice table unavailable")

    monkeypatch.setattr(capture_service, "upsert_invoice", broken)
    order = _create_order(client, customer)
    response = _card_capture(client, order["id"], 10000)
    assert response.status_code == 202

    items = client.get("/api/reconciliation?kind=ledger_write_failed").get_json()["items"]
    item_id = items[0]["id"]

    assert client.post(f"/api/reconciliation/{item_id}/resolve", json={}).status_code == 400
    response = client.post(f"/api/reconciliation/{item_id}/resolve", json={"note": "Posted by hand", "resolved_by": "ops"})
    assert response.status_code == 200
    assert response.get_json()["item"]["status"] == "resolved"

    assert client.get("/api/reconciliation").get_json()["items"] == []
    assert len(client.get("/api/reconciliation?status=all").get_json()["items"]) == 1
