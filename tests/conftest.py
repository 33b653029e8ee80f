from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from main import app
from core.db import Base, create_db_engine, create_session_factory, get_db
from core import config as core_config
from core.errors import GatewayError
from schemas.payment import GatewayResult
from security import jwt as jwt_utils
from services import orders as order_service
from services.gateway import get_gateway


@pytest.fixture(scope="session", autouse=True)
def test_settings():
    core_config.settings.JWT_SECRET = "test-secret"
    core_config.settings.PAYMENT_RETRY_INTERVAL_MINUTES = 5
    core_config.settings.PAYMENT_MAX_RETRIES = 3
    core_config.settings.DEFAULT_CURRENCY = "AUD"
    core_config.settings.ORDER_NUMBER_PREFIX = "ORD"
    core_config.settings.TESTING = True
    yield


@pytest.fixture()
def db():
    """Fresh in-memory database per test."""
    engine = create_db_engine("sqlite+pysqlite:///:memory:")
    TestingSessionLocal = create_session_factory(engine)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


class FakeGateway:
    """In-memory stand-in for the payment gateway."""

    name = "fake"

    def __init__(self):
        self.initialized = []
        self.verified = []
        self.verify_status = "success"
        self.fee = Decimal("1.50")
        self.error = None

    def initialize(self, payment, email, callback_url=None):
        self.initialized.append((payment.transaction_id, email, callback_url))
        if self.error:
            raise self.error
        return GatewayResult(
            status="pending",
            reference=payment.transaction_id,
            authorization_url=f"https://checkout.test/{payment.transaction_id}",
            access_code="access-code",
            raw={"status": True, "message": "Authorization URL created"},
        )

    def verify(self, transaction_id):
        self.verified.append(transaction_id)
        if self.error:
            raise self.error
        return GatewayResult(
            status=self.verify_status,
            reference=transaction_id,
            error=None if self.verify_status == "success" else "Declined",
            fee=self.fee if self.verify_status == "success" else None,
            raw={"status": True, "data": {"status": self.verify_status, "reference": transaction_id}},
        )


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def failing_gateway():
    fake = FakeGateway()
    fake.error = GatewayError("Paystack returned HTTP 503", response={"status": False, "message": "Unavailable"})
    return fake


@pytest.fixture()
def client(db, gateway):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    token = jwt_utils.create_admin_token("admin@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer_headers():
    token = jwt_utils.create_access_token("42")
    return {"Authorization": f"Bearer {token}"}


def _address(**overrides):
    address = {
        "name": "Jane Buyer",
        "email": "jane@example.com",
        "address": "1 George St",
        "city": "Sydney",
        "state": "NSW",
        "postcode": "2000",
        "country": "Australia",
    }
    address.update(overrides)
    return address


@pytest.fixture
def order_payload():
    """Build a checkout payload: one line of 2 x 100.00 unless overridden."""

    def _build(**overrides):
        data = {
            "guest_email": "guest@example.com",
            "billing_address": _address(),
            "shipping_address": _address(),
            "items": [
                {"product_id": 7, "product_name": "Widget", "product_sku": "WID-1", "unit_price": "100.00", "quantity": 2}
            ],
        }
        data.update(overrides)
        return data

    return _build


@pytest.fixture
def make_order(db, order_payload):
    def _make(**overrides):
        return order_service.create_order(db, order_payload(**overrides))

    return _make
