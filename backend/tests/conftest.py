"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- In-memory async SQLite database (no server database needed for tests)
- AsyncSession and session factory bound to it
- Engine wired to fake collaborators (email sender, record store, sleep)
- FastAPI test client (httpx.AsyncClient)
- Tenant and auth helpers (JWT tokens)
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from actions.base_action import ActionServices  # noqa: E402
from actions.implementations.records import InMemoryRecordStore  # noqa: E402
from core.security import create_access_token  # noqa: E402
from db.base import Base  # noqa: E402
from notifications.manager import NotificationManager  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeEmailSender:
    """Collects outgoing mail instead of talking to SMTP."""

    def __init__(self):
        self.sent: list[dict] = []

    async def send_email(self, to, subject, body, html=None, cc=None) -> dict:
        self.sent.append({"to": to, "subject": subject, "body": body, "html": html, "cc": cc})
        return {"message_id": f"<msg-{len(self.sent)}@test>"}


class RecordingSleep:
    """Sleep replacement that only records the requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeClock:
    """Clock whose sleep advances time instantly."""

    def __init__(self, start: datetime):
        self.current = start
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """A fresh in-memory database per test; every session shares one connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a DB session that commits at the end of the test."""
    async with session_factory() as session:
        yield session
        await session.commit()


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def notifier() -> NotificationManager:
    manager = NotificationManager()
    manager.configure_channels({})
    return manager


@pytest.fixture
def retry_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def action_services(email_sender, record_store, notifier) -> ActionServices:
    return ActionServices(
        email_sender=email_sender,
        notifier=notifier,
        record_store=record_store,
        sleep=RecordingSleep(),
    )


@pytest.fixture
def engine(action_services, retry_sleep) -> WorkflowEngine:
    """Engine with fake collaborators; retry backoff never really sleeps."""
    return WorkflowEngine(services=action_services, sleep=retry_sleep)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 8, 59, 30, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(session_factory, engine):
    """FastAPI app wired to the test database and engine.

    ASGITransport does not run the lifespan, so app state is set here.
    """
    from app.dependencies import get_db
    from app.main import create_app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    test_app = create_app()
    test_app.dependency_overrides[get_db] = override_get_db
    test_app.state.engine = engine
    test_app.state.scheduler = None

    yield test_app

    test_app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Test data fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def tenant_id() -> str:
    return f"tenant-{uuid4().hex[:8]}"


@pytest.fixture
def auth_headers(tenant_id) -> dict:
    """Authorization headers with a valid JWT for the test tenant."""
    token = create_access_token(user_id=f"user-{uuid4().hex[:8]}", tenant_id=tenant_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def workflow_service(db_session, engine, session_factory):
    from services.workflow_service import WorkflowService

    return WorkflowService(db_session, engine=engine, session_factory=session_factory)
