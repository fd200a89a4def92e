"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from uncharted.auth.jwt import create_access_token
from uncharted.community.levels import level_for
from uncharted.community.profile_service import get_or_create_profile
from uncharted.config import get_settings
from uncharted.database import close_db, get_engine, get_session, init_db
from uncharted.db.base import Base
from uncharted.db.models import UserProfile
from uncharted.main import create_app

INTERNAL_KEY = "test-internal-key"


@pytest.fixture(autouse=True)
def _test_settings(tmp_path, monkeypatch):
    """Point every test at its own SQLite file and enable internal endpoints."""
    monkeypatch.setenv("UNCHARTED_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'community.db'}")
    monkeypatch.setenv("UNCHARTED_INTERNAL_API_KEY", INTERNAL_KEY)
    monkeypatch.setenv("UNCHARTED_JWT_SECRET", "test-secret-at-least-32-bytes-long!!")
    monkeypatch.setenv("UNCHARTED_LOG_FORMAT", "console")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[None, None]:
    """Initialize the engine and create the community schema."""
    await init_db(get_settings().database_url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()


@pytest_asyncio.fixture
async def db_session(database) -> AsyncGenerator[AsyncSession, None]:
    """Get a direct database session for service tests and assertions."""
    async for session in get_session():
        yield session


@pytest_asyncio.fixture
async def client(database) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP test client.

    ASGITransport does not run the lifespan, so the database fixture owns
    engine setup and Redis stays uninitialized (events are skipped).
    """
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def fake_redis() -> MagicMock:
    """Stand-in Redis client recording published events."""
    redis = MagicMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def make_profile(db_session: AsyncSession) -> Callable[..., Awaitable[UserProfile]]:
    """Factory for profiles at a given XP, flushed in the test's session.

    XP is written directly (no ledger rows); tests that reconcile the
    ledger start from a fresh profile and go through award_xp.
    """

    async def _make(user_id: str, xp: int = 0, display_name: str | None = None) -> UserProfile:
        profile = await get_or_create_profile(db_session, user_id, display_name)
        if xp:
            profile.xp_points = xp
            profile.level = level_for(xp).value
            await db_session.flush()
        return profile

    return _make


def _auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    """Bearer headers for an identity, signed like the sign-in provider does."""
    return _auth_headers


@pytest.fixture
def internal_headers() -> dict[str, str]:
    return {"X-Internal-Key": INTERNAL_KEY}


@pytest.fixture
def seed_user(database) -> Callable[..., Awaitable[dict]]:
    """Factory that commits a profile at a given XP and returns its auth headers."""

    async def _seed(user_id: str, xp: int = 0) -> dict:
        profile_id = None
        async for db in get_session():
            profile = await get_or_create_profile(db, user_id, display_name=user_id)
            if xp:
                await db.execute(
                    update(UserProfile)
                    .where(UserProfile.id == profile.id)
                    .values(xp_points=xp, level=level_for(xp).value)
                )
            await db.commit()
            profile_id = profile.id
        return {"profile_id": profile_id, "headers": _auth_headers(user_id)}

    return _seed
