import os

# Point the app at the test database before paylink reads its settings
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_paylink.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("FRONTEND_URL", "https://pay.example.com")

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import paylink.auth
from paylink.config import Settings
from paylink.database import Base, get_db, make_engine
from paylink.dependencies import get_gateway
from paylink.errors import ConflictError, ProcessorError
from paylink.main import app as fastapi_app
from paylink.models import Brand, Payment, utcnow
from paylink.paypal_service import CaptureResult, OrderResult, ProcessorGateway

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_paylink.db"
engine = make_engine(SQLALCHEMY_DATABASE_URL)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeGateway(ProcessorGateway):
    """In-memory processor: orders start CREATED and become COMPLETED on capture."""

    def __init__(self):
        self.orders = {}
        self.created = []
        self.captured = []
        self.fail_create = None
        self.fail_fetch = None
        self.fail_capture = None
        self._seq = 0

    def create_order(self, order, request_id=None):
        if self.fail_create:
            raise self.fail_create
        self._seq += 1
        order_id = f"ORDER-{self._seq}"
        self.orders[order_id] = "CREATED"
        self.created.append((order, request_id))
        return OrderResult(order_id, "CREATED", f"https://paypal.test/checkoutnow?token={order_id}")

    def fetch_order(self, order_id):
        if self.fail_fetch:
            raise self.fail_fetch
        if order_id not in self.orders:
            raise ProcessorError("Order not found", {"http_status": 404})
        status = self.orders[order_id]
        approval_url = f"https://paypal.test/checkoutnow?token={order_id}" if status == "CREATED" else None
        return OrderResult(order_id, status, approval_url)

    def capture_order(self, order_id):
        self.captured.append(order_id)
        if self.fail_capture:
            raise self.fail_capture
        if self.orders.get(order_id) == "COMPLETED":
            raise ConflictError("Order already captured", {"issues": ["ORDER_ALREADY_CAPTURED"]})
        self.orders[order_id] = "COMPLETED"
        return CaptureResult(f"CAPTURE-{order_id}", "COMPLETED")


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(
        frontend_url="https://pay.example.com",
        payment_expiry_hours=24,
        default_currency="USD",
    )


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def brand(db):
    b = Brand(name="Brand X", logo_url="/brand-logos/x.png", description="Design studio",
              email="leads@brandx.test")
    db.add(b)
    db.commit()
    db.refresh(b)
    return b


@pytest.fixture
def make_payment(db, brand):
    """Insert a payment row directly, bypassing the lifecycle."""

    def _make(status="pending", order_id=None, age=timedelta(0), amount="50.00"):
        payment = Payment(
            reference_id=str(uuid.uuid4()),
            brand_id=brand.id,
            customer_name="Jane Customer",
            customer_email="jane@example.com",
            customer_phone="+15550100",
            service_name="Logo design",
            service_description="Three concepts",
            amount=Decimal(amount),
            currency="USD",
            payment_url="https://pay.example.com/pay/x",
            processor_order_id=order_id,
            status=status,
            created_at=utcnow() - age,
        )
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment

    return _make


@pytest.fixture
def webhook_event():
    def _event(event_type, order_id, event_id=None):
        if event_type.startswith("CHECKOUT.ORDER."):
            resource = {"id": order_id, "status": "APPROVED"}
        else:
            resource = {
                "id": f"CAPTURE-{order_id}",
                "status": "COMPLETED",
                "supplementary_data": {"related_ids": {"order_id": order_id}},
            }
        return {
            "id": event_id or f"WH-{uuid.uuid4().hex[:10]}",
            "event_type": event_type,
            "resource_type": "capture" if event_type.startswith("PAYMENT.") else "checkout-order",
            "resource": resource,
        }

    return _event


def override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(fake_gateway):
    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_gateway] = lambda: fake_gateway
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[paylink.auth.verify_token] = lambda: {"sub": "agent"}

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()
