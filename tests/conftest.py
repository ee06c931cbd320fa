# tests/conftest.py

import os

# The application modules build an engine on import; keep it off Postgres.
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timezone
from decimal import Decimal
import hashlib
import hmac
import itertools

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.orm import sessionmaker

from src.api.dependencies import get_db, get_gateway, get_payment_settings
from src.application.booking_service import BookingService
from src.application.payment_service import PaymentService
from src.config import PaymentSettings
from src.domain.exceptions import UpstreamGatewayError
from src.domain.state_machine import VerificationStatus
from src.infrastructure.db.models import Base, User
from src.infrastructure.db.session import build_engine
from src.infrastructure.gateway.razorpay_gateway import (
    CheckoutSession,
    RefundResult,
    SessionStatus,
)
from src.infrastructure.repositories.route_repository import RouteRepository
from src.main import app


FIXED_NOW = datetime(2030, 1, 15, 6, 0, tzinfo=timezone.utc)
USER_ID = "user-1"
OTHER_USER_ID = "user-2"
VENDOR_ID = "vendor-1"
ADMIN_ID = "admin-1"
WEBHOOK_SECRET = "whsec_test"
PAYMENT_SETTINGS = PaymentSettings(platform_fee_percent=Decimal("10"))


class FakeGateway:
    """In-memory stand-in for the hosted checkout provider."""

    name = "razorpay"

    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.refunds: dict[str, RefundResult] = {}
        self.fail_checkout = False
        self.fail_refund = False
        self.checkout_calls = 0
        self.refund_calls = 0
        self._ids = itertools.count(1)

    def create_checkout_session(
        self,
        booking_id,
        user_id,
        amount,
        currency,
        description,
        success_url,
        cancel_url,
        customer_email=None,
    ):
        self.checkout_calls += 1
        if self.fail_checkout:
            raise UpstreamGatewayError()
        session_id = f"plink_{next(self._ids)}"
        self.sessions[session_id] = {
            "status": "created",
            "metadata": {"booking_id": booking_id, "user_id": user_id},
            "payment_id": None,
            "amount": amount,
            "currency": currency,
        }
        return CheckoutSession(id=session_id, url=f"https://rzp.test/{session_id}")

    def pay(self, session_id: str) -> str:
        session = self.sessions[session_id]
        session["status"] = "paid"
        session["payment_id"] = f"pay_{session_id}"
        return session["payment_id"]

    def expire(self, session_id: str) -> None:
        self.sessions[session_id]["status"] = "expired"

    def retrieve_session(self, session_id: str) -> SessionStatus:
        session = self.sessions.get(session_id)
        if session is None:
            raise UpstreamGatewayError()
        paid = session["status"] == "paid"
        return SessionStatus(
            id=session_id,
            status=session["status"],
            metadata=dict(session["metadata"]),
            url=f"https://rzp.test/{session_id}",
            payment_id=session["payment_id"],
            gateway_fee=Decimal("20.00") if paid else Decimal("0"),
            raw={"status": session["status"]},
        )

    def cancel_session(self, session_id: str) -> str:
        session = self.sessions.get(session_id)
        if session is None or session["status"] == "paid":
            raise UpstreamGatewayError()
        session["status"] = "cancelled"
        return "cancelled"

    def refund(self, payment_id, amount, reason, notes=None) -> RefundResult:
        self.refund_calls += 1
        if self.fail_refund:
            raise UpstreamGatewayError()
        result = RefundResult(id=f"rfnd_{payment_id}", status="processed", amount=amount)
        self.refunds[payment_id] = result
        return result

    def find_refund(self, payment_id):
        return self.refunds.get(payment_id)

    def verify_webhook(self, body: bytes, signature: str) -> bool:
        return hmac.compare_digest(sign_webhook(body), signature)


def sign_webhook(body: bytes) -> str:
    return hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()


def _enable_sqlite_savepoints(engine) -> None:
    # pysqlite defers BEGIN on its own; take over so SAVEPOINT nests correctly.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'bookings.db'}")
    _enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    yield db
    db.rollback()
    db.close()


@pytest.fixture
def users(db_session):
    db_session.add_all(
        [
            User(id=USER_ID, name="Rahim", email="rahim@example.com", phone="+8801800000002"),
            User(id=OTHER_USER_ID, name="Karim", email="karim@example.com"),
            User(id=VENDOR_ID, name="Green Line", email="ops@greenline.test", role="vendor"),
            User(id=ADMIN_ID, name="Admin", role="admin"),
        ]
    )
    db_session.commit()


@pytest.fixture
def make_route(db_session, users):
    def factory(total_quantity=10, departure_time="22:30", **overrides):
        fields = {
            "title": "Dhaka to Chattogram Express",
            "from_city": "Dhaka",
            "to_city": "Chattogram",
            "transport_type": "bus",
            "price": Decimal("1200"),
            "vendor_id": VENDOR_ID,
            "operator_id": VENDOR_ID,
            "verification_status": VerificationStatus.APPROVED,
        }
        fields.update(overrides)
        route = RouteRepository(db_session).create_route(
            schedules=[{"departure_time": departure_time}] if departure_time else [],
            total_quantity=total_quantity,
            **fields,
        )
        db_session.commit()
        return route

    return factory


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def payment_service(db_session, gateway):
    return PaymentService(db_session, gateway, PAYMENT_SETTINGS, now=lambda: FIXED_NOW)


@pytest.fixture
def booking_service(db_session, payment_service):
    return BookingService(
        db_session,
        payment_service=payment_service,
        now=lambda: FIXED_NOW,
        timezone_name="UTC",
    )


@pytest.fixture
def client(session_factory, gateway, users):
    def override_get_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_payment_settings] = lambda: PAYMENT_SETTINGS
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth(user_id: str = USER_ID, role: str = "user") -> dict:
    return {"X-User-Id": user_id, "X-User-Role": role}
