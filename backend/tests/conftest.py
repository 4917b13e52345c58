"""
Pytest fixtures for payrecon backend tests.

Provides the app (in-memory SQLite), a fresh database per test, a fake
payment gateway installed in place of the real client, and the usual
customer / catalog / order fixtures.
"""

import pytest

from payrecon import create_app
from payrecon.extensions import db
from payrecon.errors import ConfigurationError
from payrecon.models import Customer, Product, ProductSize, SavedPaymentMethod
from payrecon.services import notification_service
from payrecon.services.gateway_client import GatewayResult, RefundResult


VALID_CARD = {
    "type": "card",
    "card_number": "4111 1111 1111 1111",
    "expiration_date": "12/99",
    "cvv": "123",
    "cardholder_name": "Jane Buyer",
}

BILLING = {
    "first_name": "Jane",
    "last_name": "Buyer",
    "address": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "zip": "62701",
    "country": "USA",
}


class FakeGateway:
    """
    Stand-in for GatewayClient.

    Approves everything unless results were queued with queue(); a queued
    exception instance is raised instead of returned.
    """

    def __init__(self):
        self.configured = True
        self.calls = []
        self._queued = []
        self._counter = 0

    def queue(self, *results):
        self._queued.extend(results)

    def ensure_configured(self):
        if not self.configured:
            raise ConfigurationError("Payment gateway not configured. Please contact support.",
                                     details={"code": "MISSING_CREDENTIALS"})

    def _next(self, default):
        if self._queued:
            result = self._queued.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return default

    def _txn_id(self):
        self._counter += 1
        return f"6000{self._counter:04d}"

    def authorize_capture(self, method, amount_cents, billing, **kwargs):
        self.calls.append(("authorize_capture", amount_cents, method.kind, kwargs))
        return self._next(GatewayResult(success=True, transaction_id=self._txn_id(), auth_code="AUTH01"))

    def charge_saved_method(self, method, amount_cents, **kwargs):
        self.calls.append(("charge_saved_method", amount_cents, method.payment_profile_id, kwargs))
        return self._next(GatewayResult(success=True, transaction_id=self._txn_id(), auth_code="AUTH02"))

    def refund(self, amount_cents, original_transaction_id, *, card_last_four=None):
        self.calls.append(("refund", amount_cents, original_transaction_id, card_last_four))
        return self._next(RefundResult(success=True, refund_id=f"R{self._txn_id()}", status="completed"))


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'GATEWAY_API_LOGIN_ID': 'test-login',
        'GATEWAY_TRANSACTION_KEY': 'test-key',
        'GATEWAY_ENDPOINT': 'https://gateway.test/api',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def gateway(app):
    """Fake gateway installed for the duration of one test."""
    real = app.extensions["payment_gateway"]
    fake = FakeGateway()
    app.extensions["payment_gateway"] = fake
    yield fake
    app.extensions["payment_gateway"] = real


@pytest.fixture(scope='function')
def notifications(app):
    """Capture notification events sent during a test."""
    sent = []
    hooks = app.extensions.setdefault("notification_hooks", [])

    def hook(event, payload):
        sent.append((event, payload))

    hooks.append(hook)
    yield sent
    hooks.remove(hook)


@pytest.fixture(scope='function')
def db_session(app, gateway):
    """Create fresh database for each test."""
    with app.app_context():
        db.session.remove()
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        db.session.remove()


@pytest.fixture(scope='function')
def client(app, db_session):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def customer(db_session):
    customer = Customer(
        name="Jane Buyer",
        email="jane@example.com",
        credit_limit_cents=50000,
        credit_used_cents=0,
    )
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def saved_method(db_session, customer):
    method = SavedPaymentMethod(
        customer_id=customer.id,
        customer_profile_id="CP-100",
        payment_profile_id="PP-200",
        card_last_four="4242",
        card_brand="visa",
        is_default=True,
    )
    db_session.add(method)
    db_session.commit()
    return method


@pytest.fixture(scope='function')
def tee(db_session):
    """Catalog product with three sizes, 10 of each in stock at $15.00."""
    product = Product(sku="TEE-1", name="Tee")
    db_session.add(product)
    db_session.flush()
    for label in ("S", "M", "L"):
        db_session.add(ProductSize(product_id=product.id, size_label=label, unit_price_cents=1500, stock_quantity=10))
    db_session.commit()
    return product


def lines_totaling(cents):
    """One line, one size, quantity 1 at `cents`."""
    return [{"description": "Custom item", "sizes": [{"size_label": "OS", "quantity": 1, "unit_price_cents": cents}]}]


@pytest.fixture(scope='function')
def make_order(db_session, customer):
    from payrecon.services import order_service

    def _make(total_cents=10000, **charges):
        return order_service.create_order(customer.id, lines_totaling(total_cents), charges=charges)
    return _make


@pytest.fixture(scope='function')
def paid_order(make_order, gateway):
    """A $100.00 order paid in full by card (gateway transaction on file)."""
    from payrecon.services import capture_service

    order = make_order(10000)
    capture_service.capture(order.id, dict(VALID_CARD), 10000, billing=dict(BILLING))
    return order
