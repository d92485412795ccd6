"""Shared pytest fixtures for test suite"""
import base64
import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import jwt
import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time, so the test environment goes in first
CLERK_WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"mindsync-test-clerk-webhook-secret").decode()
CLERK_SECRET_KEY = "sk_test_mindsync_clerk_session_signing_key_0123456789"
ADMIN_CLERK_ID = "user_admin"

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["CLERK_WEBHOOK_SECRET"] = CLERK_WEBHOOK_SECRET
os.environ["CLERK_SECRET_KEY"] = CLERK_SECRET_KEY
os.environ["STRIPE_SECRET_KEY"] = "sk_test_mindsync"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_stripe_test"
os.environ["STRIPE_SIMULATION"] = "false"
os.environ["ADMIN_USER_IDS"] = ADMIN_CLERK_ID

from mindsync.main import app
from mindsync.db.session import get_db
from mindsync.models import Base
from mindsync.models.user import User
from mindsync.services.user_service import create_user_with_subscription


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


def make_session_token(clerk_id: str, expires_in: int = 3600) -> str:
    """Clerk-style session JWT signed with the test secret (HS256)"""
    now = int(time.time())
    return jwt.encode(
        {"sub": clerk_id, "iat": now, "exp": now + expires_in},
        CLERK_SECRET_KEY,
        algorithm="HS256"
    )


def auth_header(clerk_id: str) -> dict:
    return {"Authorization": f"Bearer {make_session_token(clerk_id)}"}


def svix_headers(payload: bytes, msg_id: str = "msg_test123", timestamp: int = None, secret: str = CLERK_WEBHOOK_SECRET) -> dict:
    """Headers of a Svix-signed delivery of ``payload``"""
    timestamp = str(timestamp if timestamp is not None else int(time.time()))
    key = base64.b64decode(secret[len("whsec_"):])
    signed = msg_id.encode() + b"." + timestamp.encode() + b"." + payload
    signature = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode()
    return {
        "svix-id": msg_id,
        "svix-timestamp": timestamp,
        "svix-signature": f"v1,{signature}",
    }


def clerk_event(event_type: str, data: dict) -> bytes:
    return json.dumps({"type": event_type, "object": "event", "data": data}).encode()


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_test123") -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Disable OpenTelemetry and startup schema creation in tests
        with patch('mindsync.main.initialize_otel', return_value=False):
            with patch('mindsync.main.init_db'):
                with patch('mindsync.main.instrument_sqlalchemy'):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """Create a user with its default free subscription"""
    return create_user_with_subscription("user_test123", "listener@example.com", "Test Listener", db_session)


@pytest.fixture(scope="function")
def billing_user(db_session: Session, test_user: User) -> User:
    """Test user already linked to a Stripe customer"""
    test_user.stripe_customer_id = "cus_test123"
    db_session.commit()
    db_session.refresh(test_user)
    return test_user


@pytest.fixture(scope="function")
def user_headers(test_user: User) -> dict:
    return auth_header(test_user.clerk_id)


@pytest.fixture(scope="function")
def admin_headers() -> dict:
    return auth_header(ADMIN_CLERK_ID)


@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Automatically mock Stripe for all tests so nothing reaches the API"""
    with patch('mindsync.services.stripe_service.stripe') as mock_stripe_module:
        # Real error classes so except clauses keep working
        mock_stripe_module.StripeError = stripe.StripeError
        mock_stripe_module.SignatureVerificationError = stripe.SignatureVerificationError

        # Signature checks pass by default and hand back the posted event
        mock_stripe_module.Webhook.construct_event = Mock(
            side_effect=lambda payload, sig_header, secret: json.loads(payload)
        )

        # Mock Checkout operations
        mock_stripe_module.checkout.Session.create = Mock(return_value=Mock(
            id="cs_test123",
            url="https://checkout.stripe.com/test"
        ))

        # Mock Billing Portal operations
        mock_stripe_module.billing_portal.Session.create = Mock(return_value=Mock(
            url="https://billing.stripe.com/test"
        ))

        yield mock_stripe_module
