"""
Pytest configuration and fixtures for Fanchat API tests.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fanchat.auth import create_access_token
from fanchat.config import get_settings
from fanchat.database import Base, get_db
from fanchat.dependencies import get_clock
from fanchat.limiter import limiter
from fanchat.main import app
from fanchat.services.conversation_store import ConversationStore
from fanchat.services.fanout import EventHub
from fanchat.services.session_machine import SessionStateMachine
from fanchat.services.unlock_ledger import UnlockLedger

# Disable rate limiting for tests
limiter.enabled = False

WEBHOOK_SECRET = "test-webhook-secret"
get_settings().payment_webhook_secret = WEBHOOK_SECRET

CREATOR_UID = get_settings().creator_uid
FAN_UID = "fan-1"
FAN_EMAIL = "fan@example.com"
OTHER_UID = "fan-2"
OTHER_EMAIL = "other@example.com"

# Use in-memory SQLite for tests with shared connection
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Global session for sharing across requests
_test_session = None


def get_test_db():
    """Get the shared test database session."""
    global _test_session
    try:
        yield _test_session
    finally:
        pass


class FakeClock:
    """Settable wall clock for session-window tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_token(uid: str, email: str = None, name: str = None) -> str:
    claims = {"sub": uid}
    if email:
        claims["email"] = email
    if name:
        claims["name"] = name
    return create_access_token(claims)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    global _test_session

    # Create all tables
    Base.metadata.create_all(bind=engine)

    # Create a session
    _test_session = TestingSessionLocal()

    # Override the get_db dependency
    app.dependency_overrides[get_db] = get_test_db

    yield _test_session

    # Cleanup
    app.dependency_overrides.clear()
    _test_session.close()
    _test_session = None

    # Drop all tables
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db):
    """Session factory for live streams, bound to the test database."""
    return TestingSessionLocal


@pytest.fixture(scope="function")
def clock(db):
    """Fake clock, also used by the API for session-window decisions."""
    fake = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    app.dependency_overrides[get_clock] = lambda: fake
    return fake


@pytest.fixture(scope="function")
def client(db):
    """Create a test client."""
    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="function")
def hub():
    """Isolated event hub so tests never see each other's events."""
    return EventHub()


@pytest.fixture(scope="function")
def store(db, hub):
    return ConversationStore(db, hub=hub)


@pytest.fixture(scope="function")
def machine(db, store, hub, clock):
    return SessionStateMachine(db, store=store, hub=hub, clock=clock)


@pytest.fixture(scope="function")
def ledger(db, hub, clock):
    return UnlockLedger(db, hub=hub, clock=clock)


@pytest.fixture(scope="function")
def fan_conversation(store):
    """The default fan's conversation with the creator."""
    return store.ensure_conversation(FAN_UID, FAN_EMAIL, "Fan One")


@pytest.fixture(scope="function")
def fan_headers():
    return {"Authorization": f"Bearer {make_token(FAN_UID, FAN_EMAIL, 'Fan One')}"}


@pytest.fixture(scope="function")
def other_fan_headers():
    return {"Authorization": f"Bearer {make_token(OTHER_UID, OTHER_EMAIL, 'Fan Two')}"}


@pytest.fixture(scope="function")
def creator_headers():
    return {"Authorization": f"Bearer {make_token(CREATOR_UID, 'creator@example.com', 'Creator')}"}
