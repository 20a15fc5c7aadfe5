import os
from contextlib import contextmanager
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Optional overrides for local runs (e.g. TEST_DATABASE_URL pointing at Postgres)
env_test_path = os.path.join(os.path.dirname(__file__), ".env.test")
if os.path.exists(env_test_path):
    load_dotenv(env_test_path, override=True)
os.environ.setdefault("ENVIRONMENT", "test")

from libs.auth.dependencies import get_current_user  # noqa: E402
from libs.auth.models import AuthUser  # noqa: E402
from libs.common.config import get_settings  # noqa: E402
from libs.db.base import Base  # noqa: E402
from libs.db.session import get_async_db  # noqa: E402

# Import all models so metadata includes every table
from services.commerce_service import models as _commerce_models  # noqa: F401,E402

# Clear cached settings to reload with new env vars
get_settings.cache_clear()
settings = get_settings()

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """
    Fresh schema per test.

    In-memory SQLite by default (one shared connection via StaticPool), or the
    database named by TEST_DATABASE_URL. SQLite ignores FOR UPDATE, so
    lock behaviour is only really exercised against Postgres.
    """
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_async_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_async_engine(TEST_DATABASE_URL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a database session configured like the application's.
    """
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------


def make_auth_user(user_id: int, role: str = "customer") -> AuthUser:
    return AuthUser(user_id=user_id, email=f"user{user_id}@test.com", role=role)


def make_admin_user(user_id: int = 9000) -> AuthUser:
    return make_auth_user(user_id, role="admin")


@contextmanager
def override_auth(app, user: AuthUser):
    """Temporarily authenticate every request as ``user``."""
    previous = app.dependency_overrides.get(get_current_user)
    app.dependency_overrides[get_current_user] = lambda: user
    try:
        yield user
    finally:
        if previous is None:
            app.dependency_overrides.pop(get_current_user, None)
        else:
            app.dependency_overrides[get_current_user] = previous


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def commerce_app(session_factory):
    """The commerce app with its DB dependency bound to the test engine."""
    from services.commerce_service.app.main import app

    async def _get_test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = _get_test_db
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def commerce_client(commerce_app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=commerce_app), base_url="http://test"
    ) as ac:
        yield ac


@pytest.fixture
def auth_headers() -> dict:
    """
    Placeholder bearer header; auth is mocked through dependency overrides.
    """
    return {"Authorization": "Bearer mock-token"}
