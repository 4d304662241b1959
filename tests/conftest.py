"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async) and a session factory for the processor
- A mocked FSM client
- Inbox event factories
- In-memory Redis
"""
import os
os.environ.setdefault("FSM_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

import pytest
from datetime import datetime
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, patch

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

import app.db.models  # noqa: F401
from app.core.time_utils import utcnow
from app.db.database import Base, get_db
from app.db.models.fsm_account import FSMAccount
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.domain.services.fsm.client import FSMClient
from app.domain.services.fsm.schemas import MutationResult
from app.main import app
from tests.factories import TEST_ACCOUNT_ID


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_ADMIN_API_KEY = "test-admin-key"
TEST_WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker:
    """Session factory bound to the test engine, as the processor uses it"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture(autouse=True)
def set_api_secrets():
    """Pin the webhook secret and admin key regardless of the local .env"""
    from app.core.config import settings

    with patch.object(settings, "FSM_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET), \
         patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY):
        yield


# ============================================================================
# FSM client
# ============================================================================

@pytest.fixture
def fsm_client() -> AsyncMock:
    """
    FSM client double.

    Writes succeed by default; reads must be configured per test via
    ``fsm_client.get_job.return_value = make_job(...)`` and friends.
    """
    client = AsyncMock(spec=FSMClient)
    client.account_id = TEST_ACCOUNT_ID
    client.update_job_line_items.return_value = MutationResult(object_id="job")
    client.set_job_custom_field.return_value = MutationResult(object_id="job")
    client.add_job_note.return_value = MutationResult(object_id="note")
    client.create_invoice.return_value = MutationResult(object_id="inv-ext-1")
    client.send_invoice.return_value = MutationResult(object_id="inv-ext-1")
    return client


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def event_factory(db_session: AsyncSession):
    """Factory for inbox rows"""
    counter = {"n": 0}

    async def _create_event(
        topic: str = "JOB_COMPLETED",
        object_id: str = "job-1",
        *,
        event_id: str | None = None,
        account_id: str = TEST_ACCOUNT_ID,
        status: WebhookEventStatus = WebhookEventStatus.PENDING,
        attempts: int = 0,
        occurred_at: datetime | None = None,
        handled_families: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> WebhookEvent:
        counter["n"] += 1
        event = WebhookEvent(
            event_id=event_id or f"evt-{counter['n']}",
            account_id=account_id,
            topic=topic,
            object_id=object_id,
            payload={"topic": topic},
            status=status,
            attempts=attempts,
            handled_families=handled_families or {},
            occurred_at=occurred_at or datetime(2026, 5, 1, 12, 0, 0),
            received_at=utcnow(),
            **kwargs,
        )
        db_session.add(event)
        await db_session.commit()
        return event

    return _create_event


@pytest.fixture
async def fsm_account(db_session: AsyncSession) -> FSMAccount:
    account = FSMAccount(
        account_id=TEST_ACCOUNT_ID,
        name="Green Acres Lawn Care",
        access_token="access-token",
        refresh_token="refresh-token",
        token_expires_at=None,
    )
    db_session.add(account)
    await db_session.commit()
    return account


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_custom_field_registry():
    from app.domain.services.fsm.custom_fields import custom_field_registry
    custom_field_registry.invalidate()
    yield
    custom_field_registry.invalidate()


class FakeRedis:
    """In-memory Redis replacement with a compatible interface and TTL tracking."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET with NX (only if absent) and EX (expiry in seconds)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.fsm.client.get_redis", _get_fake_redis):
        yield _fake


# Each test gets a fresh in-memory DB through async_engine (function-scoped),
# so no cleanup fixture for inbox rows is needed.
