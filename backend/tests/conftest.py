"""Shared pytest fixtures for test suite"""
import os
import pytest
import sys
import json
import secrets
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import fakeredis
import stripe

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test123")
os.environ.setdefault("STRIPE_CONNECT_WEBHOOK_SECRET", "whsec_connect_test123")
os.environ.setdefault("ENVIRONMENT", "test")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from tickety_payments.main import app
from tickety_payments.db.session import get_db
from tickety_payments.db import redis as redis_module
from tickety_payments.models import Base
from tickety_payments.models.event import Event, EventStaff
from tickety_payments.models.ticket import Ticket
from tickety_payments.models.user import User
from tickety_payments.services.auth_service import create_user


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

TEST_PASSWORD = "TestPassword123!"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Replace the lazily created Redis client with fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Session is closed by the db_session fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Startup must not touch OpenTelemetry or the real database
        with patch("tickety_payments.main.initialize_otel", return_value=False), \
                patch("tickety_payments.main.setup_otel_logging", return_value=False), \
                patch("tickety_payments.main.instrument_sqlalchemy"), \
                patch("tickety_payments.main.init_db"):
            with TestClient(app, raise_server_exceptions=False) as test_client:
                yield test_client
    finally:
        app.dependency_overrides.clear()


# ============================================================================
# USERS, EVENTS, TICKETS
# ============================================================================

def make_user(db_session: Session, email: str, display_name: str = None) -> User:
    return create_user(db_session, email, TEST_PASSWORD, display_name)


def make_event(db_session: Session, organizer: User, price_cents: int = 2999, **fields) -> Event:
    event = Event(title=fields.pop("title", "Test Concert"), organizer_id=organizer.id, price_cents=price_cents, **fields)
    db_session.add(event)
    db_session.commit()
    db_session.refresh(event)
    return event


def make_ticket(db_session: Session, event: Event, owner: User = None, number: str = None, **fields) -> Ticket:
    ticket = Ticket(
        event_id=event.id,
        ticket_number=number or f"TKT-{secrets.token_hex(4).upper()}",
        owner_email=owner.email if owner else fields.pop("owner_email", None),
        owner_user_id=owner.id if owner else None,
        price_paid_cents=fields.pop("price_paid_cents", event.price_cents),
        status=fields.pop("status", "valid"),
        ticket_mode=fields.pop("ticket_mode", "standard"),
        **fields
    )
    db_session.add(ticket)
    db_session.commit()
    db_session.refresh(ticket)
    return ticket


def add_staff(db_session: Session, event: Event, user: User, role: str = "seller") -> EventStaff:
    staff = EventStaff(event_id=event.id, user_id=user.id, role=role)
    db_session.add(staff)
    db_session.commit()
    return staff


@pytest.fixture(scope="function")
def organizer(db_session: Session) -> User:
    return make_user(db_session, "organizer@tickety.test", "Olive Organizer")


@pytest.fixture(scope="function")
def buyer(db_session: Session) -> User:
    return make_user(db_session, "buyer@tickety.test", "Bea Buyer")


@pytest.fixture(scope="function")
def seller(db_session: Session) -> User:
    return make_user(db_session, "seller@tickety.test", "Sam Seller")


@pytest.fixture(scope="function")
def event(db_session: Session, organizer: User) -> Event:
    return make_event(db_session, organizer)


@pytest.fixture(scope="function")
def auth_headers(mock_redis):
    """Build bearer headers for a user by writing a session straight to Redis"""
    def _headers(user: User) -> dict:
        token = secrets.token_urlsafe(32)
        mock_redis.setex(f"session:{token}", 2592000, str(user.id))
        return {"Authorization": f"Bearer {token}"}
    return _headers


# ============================================================================
# STRIPE
# ============================================================================

def webhook_payload(event_id: str, event_type: str, obj: dict, created: int = 1700000000, account: str = None) -> bytes:
    event = {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    }
    if account:
        event["account"] = account
    return json.dumps(event).encode("utf-8")


@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Automatically mock Stripe for all tests so nothing reaches the API"""
    with patch("tickety_payments.services.stripe_service.stripe") as mock_stripe_module:
        # Real exception classes so except clauses keep working
        mock_stripe_module.error = stripe.error

        mock_stripe_module.Customer.create = Mock(return_value=Mock(id="cus_test123"))
        mock_stripe_module.EphemeralKey.create = Mock(return_value=Mock(secret="ek_test_secret"))
        mock_stripe_module.PaymentIntent.create = Mock(return_value=Mock(
            id="pi_test123",
            client_secret="pi_test123_secret_abc",
            status="succeeded"
        ))
        mock_stripe_module.Refund.create = Mock(return_value=Mock(id="re_test123", status="succeeded"))

        # Connect
        mock_stripe_module.Account.create = Mock(return_value=Mock(id="acct_test123"))
        mock_stripe_module.Account.retrieve = Mock(return_value=Mock(
            id="acct_test123",
            charges_enabled=True,
            payouts_enabled=True,
            details_submitted=True
        ))
        mock_stripe_module.Account.create_login_link = Mock(return_value=Mock(url="https://connect.stripe.com/express/test"))
        mock_stripe_module.AccountLink.create = Mock(return_value=Mock(url="https://connect.stripe.com/setup/test"))
        mock_stripe_module.Balance.retrieve = Mock(return_value={
            "available": [{"amount": 5000, "currency": "usd"}],
            "pending": [{"amount": 1200, "currency": "usd"}],
        })
        mock_stripe_module.Payout.create = Mock(return_value=Mock(id="po_test123", arrival_date=1700086400))

        # Signature checks pass unless a test says otherwise
        mock_stripe_module.Webhook.construct_event = Mock(return_value={})

        yield mock_stripe_module
