"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- HTTP test client with the database dependency overridden
- In-memory Redis replacement
- Bearer tokens for test users
- Test data factories (spots with occupants, credit accounts)
"""
# JWT_SECRET_KEY must exist before app import; the settings validator requires it when DEBUG=False
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")

import json
import pytest
from datetime import datetime
from typing import AsyncGenerator
from unittest.mock import patch

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

import app.db.models  # noqa: F401  registers every table on Base.metadata
from app.db.database import Base, get_db
from app.db.models.parking_spot import ParkingSpot
from app.db.models.parking_session import ParkingSession, SessionSource
from app.db.models.credit_transaction import TransactionKind
from app.core.auth import create_access_token
from app.core.config import settings
from app.core.timeutils import utcnow
from app.domain.services.ledger_service import CreditLedgerService
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


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
def session_maker(async_engine):
    """Session factory bound to the test engine, for tests that need a second session"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_maker() as session:
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


# ============================================================================
# Redis
# ============================================================================

class FakeRedis:
    """In-memory Redis replacement with the subset of the API the app uses."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self.published: list[tuple[str, dict]] = []
        self.fail_publish = False

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        return True

    async def publish(self, channel: str, message: str) -> int:
        if self.fail_publish:
            raise ConnectionError("redis unavailable")
        self.published.append((channel, json.loads(message)))
        return 1

    async def aclose(self) -> None:
        self._store.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with a FakeRedis for every test."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Auth
# ============================================================================

_TEST_JWT_SECRET = "test-jwt-secret-key-for-testing-only-do-not-use-in-production"


@pytest.fixture(autouse=True)
def set_jwt_secret():
    """Deterministic JWT settings for tests"""
    with patch.object(settings, "JWT_SECRET_KEY", _TEST_JWT_SECRET), \
         patch.object(settings, "JWT_ALGORITHM", "HS256"), \
         patch.object(settings, "JWT_ACCESS_TOKEN_EXPIRE_MINUTES", 60):
        yield


@pytest.fixture
def auth_headers():
    """Build an Authorization header for a user id"""
    def _headers(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _headers


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def spot_factory(db_session: AsyncSession):
    """
    Factory for parking spots.

    With ``holder`` the spot is occupied and the holder gets a claimed
    session on it; without it the spot is available.
    """
    async def _create_spot(
        holder: str | None = None,
        latitude: float = 52.5200,
        longitude: float = 13.4050,
        available_since: datetime | None = None,
    ) -> ParkingSpot:
        now = utcnow()
        spot = ParkingSpot(
            latitude=latitude,
            longitude=longitude,
            available=holder is None,
            available_since=None if holder else (available_since or now),
            reported_by=holder,
        )
        db_session.add(spot)
        await db_session.flush()

        if holder:
            db_session.add(
                ParkingSession(
                    user_id=holder,
                    spot_id=spot.id,
                    latitude=latitude,
                    longitude=longitude,
                    source=SessionSource.CLAIMED,
                    started_at=now,
                )
            )
        await db_session.commit()
        await db_session.refresh(spot)
        return spot

    return _create_spot


@pytest.fixture
def account_factory(db_session: AsyncSession):
    """
    Factory for credit accounts with a given balance.

    Starts from the welcome bonus and adjusts through the ledger, so the
    balance always equals the sum of the user's transactions.
    """
    async def _create_account(user_id: str, balance: int = 20) -> int:
        ledger = CreditLedgerService(db_session)
        await ledger.get_or_create_account(user_id)
        delta = balance - settings.WELCOME_BONUS_CREDITS
        if delta > 0:
            await ledger.credit(user_id, delta, TransactionKind.PURCHASE, description="Test top-up")
        elif delta < 0:
            await ledger.debit(user_id, -delta, TransactionKind.PARKING_USED, description="Test spend")
        await db_session.commit()
        return balance

    return _create_account
