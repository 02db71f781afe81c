"""Shared test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (via aiosqlite) with all
tables created, so tests are fully isolated and need no running PostgreSQL.
The store picks SQLite's ``INSERT ... ON CONFLICT`` for upserts.
"""

import uuid
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from paygate.auth.jwt import create_access_token
from paygate.config import settings
from paygate.database import Base, get_db
from paygate.main import app
from paygate.models.subscription import Subscription
from paygate.models.user import ROLE_ADMIN, ROLE_PREMIUM, ROLE_USER, User

PRICE_MONTHLY = "price_monthly_test"
PRICE_ANNUAL = "price_annual_test"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """A fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session bound to the per-test database."""
    factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to use the test DB session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Configuration and outbound boundaries
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def stripe_prices(monkeypatch):
    """Configure known Stripe price IDs for the plan resolver."""
    monkeypatch.setattr(settings, "stripe_price_monthly_id", PRICE_MONTHLY)
    monkeypatch.setattr(settings, "stripe_price_annual_id", PRICE_ANNUAL)


@pytest.fixture(autouse=True)
def mock_notify():
    """Never reach the notification service from tests."""
    with patch("paygate.billing.notifier.notify", new_callable=AsyncMock, return_value=True) as mock:
        yield mock


# ---------------------------------------------------------------------------
# Users and subscriptions
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(db_session: AsyncSession):
    """Factory: create a user with the given role."""

    async def _make(role: str = ROLE_USER) -> User:
        unique = uuid.uuid4().hex[:8]
        user = User(email=f"user-{unique}@test.com", name="Test User", role=role, is_active=True)
        db_session.add(user)
        await db_session.flush()
        return user

    return _make


@pytest.fixture
def make_subscription(db_session: AsyncSession):
    """Factory: create a subscription row for a user (defaults to active monthly)."""

    async def _make(user: User, **fields) -> Subscription:
        values = {
            "plan": "monthly",
            "status": "active",
            "is_active": True,
            "stripe_customer_id": "cus_test_123",
            "stripe_subscription_id": "sub_test_123",
        }
        values.update(fields)
        subscription = Subscription(user_id=user.id, **values)
        db_session.add(subscription)
        await db_session.flush()
        return subscription

    return _make


@pytest_asyncio.fixture
async def test_user(make_user) -> User:
    """A premium user without a subscription row."""
    return await make_user(ROLE_PREMIUM)


@pytest_asyncio.fixture
async def admin_user(make_user) -> User:
    return await make_user(ROLE_ADMIN)


@pytest.fixture
def headers_for():
    """Factory: Authorization headers for any user."""

    def _headers(user: User) -> dict[str, str]:
        token = create_access_token({"sub": str(user.id)})
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def auth_headers(test_user: User, headers_for) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return headers_for(test_user)
