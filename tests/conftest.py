"""Pytest configuration and fixtures for authcore tests.

Database handling:
- Uses TEST_DATABASE_URL when set (e.g. a PostgreSQL instance)
- Otherwise runs against an in-memory SQLite database via aiosqlite
"""

import base64
import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

SQLITE_MEMORY_URL = "sqlite+aiosqlite:///:memory:"

# Set test environment variables before importing authcore modules
TEST_JWT_SECRET = base64.b64encode(b"authcore-test-signing-secret-0123456789").decode()
os.environ["JWT_SECRET"] = TEST_JWT_SECRET
os.environ["TOKEN_ENCRYPTION_KEY"] = "0" * 64  # Valid 32-byte key for tests
os.environ["ENVIRONMENT"] = "local"
os.environ["DATABASE_URL"] = os.environ.get("TEST_DATABASE_URL", SQLITE_MEMORY_URL)

# Fixed point in time used by clock-driven tests
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# --- Database Fixtures ---


def _test_database_url() -> str:
    return os.environ["DATABASE_URL"]


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create a database engine with all tables for one test."""
    from authcore.models import Base

    url = _test_database_url()
    if url.startswith("sqlite"):
        # One shared connection so every session sees the same in-memory database
        engine = create_async_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_async_engine(url, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# --- Test Factories ---


@pytest.fixture
def member_factory(db_session):
    """Factory for creating Member rows."""
    from authcore.models import AuthProvider, Member

    counter = {"n": 0}

    async def _create_member(
        email: str | None = None,
        provider: AuthProvider = AuthProvider.KAKAO,
        provider_user_id: str | None = None,
        **kwargs,
    ) -> Member:
        counter["n"] += 1
        n = counter["n"]
        member = Member(
            email=email or f"member{n}@example.com",
            provider=provider,
            provider_user_id=provider_user_id or f"uid-{n}",
            nickname=kwargs.pop("nickname", f"member-{n}"),
            user_number=kwargs.pop("user_number", n),
            login_count=kwargs.pop("login_count", 1),
            visit_count=kwargs.pop("visit_count", 1),
            **kwargs,
        )
        db_session.add(member)
        await db_session.commit()
        return member

    return _create_member


# --- Provider HTTP ---


def make_response(
    status_code: int = 200,
    json: dict | None = None,
    text: str | None = None,
    method: str = "POST",
    url: str = "https://provider.example.com",
) -> httpx.Response:
    """Build an httpx.Response bound to a request, as the client would return."""
    request = httpx.Request(method, url)
    if json is not None:
        return httpx.Response(status_code, json=json, request=request)
    return httpx.Response(status_code, text=text or "", request=request)


@pytest.fixture
def mock_http_client():
    """Patch the provider HTTP client factory.

    Configure ``mock_http_client.request`` (return_value / side_effect) with
    responses built by ``make_response``.
    """
    with patch("authcore.services.oauth_client._get_http_client") as mock_client_factory:
        mock_client = MagicMock()
        mock_client.request = AsyncMock()
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=False)
        mock_client_factory.return_value = mock_client
        yield mock_client
