"""
Test fixtures for Voyaj backend tests.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from httpx import AsyncClient, ASGITransport

import voyaj.models  # noqa: F401  registers tables on Base
from voyaj.config import Settings
from voyaj.database import Base, get_db
from voyaj.engine import build_engine
from voyaj.main import app
from voyaj.services.ai_service import AIService
from voyaj.services.classifier import RuleClassifier
from voyaj.services.notification import InMemoryNotifier
from voyaj.store.memory import MemoryStore
from voyaj.store.records import InboundMessage, TripStage, utcnow
from voyaj.store.sql import SqlStore


# Create test database engine (SQLite in-memory, one shared connection)
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Enable foreign key constraints for SQLite
@event.listens_for(test_engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeClock:
    """Callable clock for the stage machine; starts at the real current time."""

    def __init__(self, start: datetime = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    values = {"env": "test", "scheduler_enabled": False, "ai_provider": "none"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_message(phone: str, body: str, group_id: str = None) -> InboundMessage:
    return InboundMessage(from_phone=phone, body=body, group_chat_id=group_id)


def phone_for(name: str) -> str:
    # Stable, distinct numbers per test name
    return f"+1555{sum(ord(c) * (i + 1) for i, c in enumerate(name)) % 10000000:07d}"


async def add_members(store, trip_id, names):
    return [await store.create_member(trip_id, phone_for(name), name) for name in names]


async def make_trip(store, stage: TripStage = TripStage.CREATED, members=(), **fields):
    trip = await store.create_trip()
    await add_members(store, trip.id, members)
    if stage != TripStage.CREATED or fields:
        trip = await store.update_trip(trip.id, stage=stage, **fields)
    return trip


@pytest.fixture(autouse=True)
def reset_ai_service():
    """Reset AIService state before and after each test."""
    AIService.reset()
    yield
    AIService.reset()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
async def engine(store, notifier, settings, clock):
    built = build_engine(store, notifier, settings=settings, classifier=RuleClassifier(), clock=clock)
    yield built
    await built.shutdown()


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database session for each test.
    Creates all tables before the test and drops them after.
    """
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def sql_store(db_session):
    return SqlStore(TestSessionLocal)


@pytest.fixture(scope="function")
def override_get_db(db_session):
    """
    Override the get_db dependency to use the test database session.
    """
    def _override_get_db():
        try:
            yield db_session
        finally:
            pass

    return _override_get_db


@pytest.fixture(scope="function")
async def client(override_get_db, engine):
    """
    Async test client with the database dependency overridden and a
    MemoryStore engine attached in place of the lifespan-built one.
    """
    app.dependency_overrides[get_db] = override_get_db
    app.state.engine = engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.engine = None
