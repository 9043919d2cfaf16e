"""
Pytest configuration and fixtures for Last Wish tests.

Provides:
- Async test database with SQLite
- Test client for API testing
- Factory fixtures for users, sessions and switches
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import Settings, get_settings
from app.core.database import get_db
from app.core.datetime_utils import utc_now
from app.main import app
from app.models import Base
from app.models.last_wish import DEFAULT_INCLUDE_DATA, CheckInSwitch
from app.models.user import Session, User
from app.services.data_export import reset_data_exporter

# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# Override settings for testing
class TestSettings(Settings):
    database_url: str = TEST_DATABASE_URL
    debug: bool = True
    resend_api_key: str = "test-key"
    base_url: str = "http://localhost:8000"
    scheduler_enabled: bool = False
    ledger_export_url: str = ""


@pytest.fixture(autouse=True)
def _reset_exporter():
    """Every test starts with the default (null) exporter."""
    reset_data_exporter()
    yield
    reset_data_exporter()


@pytest_asyncio.fixture
async def db_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine (what the scheduler tick receives)."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client with database override."""
    from app.core.rate_limit import limiter

    async def override_get_db():
        yield db_session

    def override_get_settings():
        return TestSettings()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = override_get_settings

    # Reset rate limiter storage before each test
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================================
# Factory Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def user_factory(db_session: AsyncSession):
    """Factory for creating test users."""

    async def _create_user(email: str | None = None) -> User:
        if email is None:
            email = f"test-{uuid.uuid4().hex[:8]}@example.com"

        user = User(email=email)
        db_session.add(user)
        await db_session.flush()
        return user

    return _create_user


@pytest_asyncio.fixture
async def session_factory(db_session: AsyncSession, user_factory):
    """Factory for creating test sessions."""

    async def _create_session(user: User | None = None, expired: bool = False) -> Session:
        if user is None:
            user = await user_factory()

        session = Session(
            user_id=user.id,
            expires_at=utc_now() + timedelta(days=-1 if expired else 30),
        )
        db_session.add(session)
        await db_session.flush()
        return session

    return _create_session


def _make_recipients(*emails: str) -> list[dict]:
    return [
        {"id": str(uuid.uuid4()), "email": email, "name": email.split("@")[0], "relationship": ""}
        for email in emails
    ]


@pytest_asyncio.fixture
async def switch_factory(db_session: AsyncSession, user_factory):
    """Factory for creating switches in a given state."""

    async def _create_switch(
        user: User | None = None,
        is_enabled: bool = True,
        frequency_days: int = 7,
        last_check_in: datetime | None = None,
        checked_in_days_ago: float | None = None,
        recipients: list[dict] | None = None,
        delivered_at: datetime | None = None,
        message: str = "Look after each other.",
        epoch: int = 1,
    ) -> CheckInSwitch:
        if user is None:
            user = await user_factory()
        if checked_in_days_ago is not None:
            last_check_in = utc_now() - timedelta(days=checked_in_days_ago)
        if recipients is None:
            recipients = _make_recipients("heir@example.com")

        switch = CheckInSwitch(
            user_id=user.id,
            is_enabled=is_enabled,
            frequency_days=frequency_days,
            last_check_in=last_check_in,
            recipients=recipients,
            include_data=dict(DEFAULT_INCLUDE_DATA),
            message=message,
            delivered_at=delivered_at,
            epoch=epoch,
        )
        db_session.add(switch)
        await db_session.flush()
        return switch

    return _create_switch


@pytest_asyncio.fixture
async def auth_client(client: AsyncClient, session_factory, user_factory):
    """Client authenticated as a fresh user; returns (client, user)."""
    user = await user_factory()
    session = await session_factory(user)
    client.cookies.set("session_id", str(session.id))
    return client, user


# ============================================================================
# Mock Fixtures
# ============================================================================


@pytest.fixture
def mock_sender():
    """AsyncMock standing in for the email transport; succeeds by default."""
    return AsyncMock(return_value=True)


@pytest.fixture
def make_recipients():
    """Build recipient records from email addresses."""
    return _make_recipients
