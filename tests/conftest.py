"""Shared test configuration and fixtures.

Every test gets a fresh in-memory SQLite database. The engine uses a single
shared connection, so work that opens its own sessions (batch audits, the
cron endpoint) sees rows only after the seeding session commits.
"""

import os

# Settings are read at import time; configure them before importing subsync.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_TIMEOUT_SECONDS"] = "2"
os.environ["CRON_SECRET"] = "cron-test-secret"
os.environ["STRIPE_PRICE_MONTHLY_BRL"] = "price_monthly_brl_test"
os.environ["STRIPE_PRICE_ANNUAL_BRL"] = "price_annual_brl_test"
os.environ["STRIPE_PRICE_LIFETIME_BRL"] = "price_lifetime_brl_test"
os.environ["STRIPE_PRICE_MONTHLY_USD"] = "price_monthly_usd_test"
os.environ["STRIPE_PRICE_ANNUAL_USD"] = "price_annual_usd_test"
os.environ["STRIPE_PRICE_LIFETIME_USD"] = "price_lifetime_usd_test"

import uuid  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402

import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

import subsync.models  # noqa: E402,F401
from subsync.auth.jwt import create_access_token  # noqa: E402
from subsync.database import Base, get_db, get_session_factory  # noqa: E402
from subsync.main import app  # noqa: E402
from subsync.models.user import User  # noqa: E402


@pytest_asyncio.fixture
async def test_engine():
    """Create a fresh in-memory database with all tables."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session bound to the per-test database."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession, session_factory
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to use the test DB session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience fixtures: authenticated user
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create and return a test user directly in the DB."""
    unique = uuid.uuid4().hex[:8]
    user = User(
        id=f"user_{unique}",
        email=f"testuser-{unique}@test.com",
        name="Test User",
        is_active=True,
    )
    db_session.add(user)
    await db_session.flush()
    return user


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    token = create_access_token({"sub": test_user.id})
    return {"Authorization": f"Bearer {token}"}
