import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Optional overrides for local runs
env_test_path = os.path.join(os.path.dirname(__file__), ".env.test")
if os.path.exists(env_test_path):
    load_dotenv(env_test_path, override=True)

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest-registration.db")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_STORAGE_URL", "memory://")
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")

from libs.auth.dependencies import get_current_user  # noqa: E402
from libs.auth.models import AuthUser  # noqa: E402
from libs.common.config import get_settings  # noqa: E402
from libs.db.base import Base  # noqa: E402
from libs.db.session import get_async_db  # noqa: E402

# Import all models so metadata includes every table
from services.registration_service import models as _registration_models  # noqa: E402,F401

# Clear cached settings to reload with new env vars
get_settings.cache_clear()
settings = get_settings()


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """
    A fresh SQLite file database per test. A file rather than :memory: so
    that several sessions can race on it the way separate requests would.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'registration.db'}",
        future=True,
        connect_args={"timeout": 15},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


class ActingUser:
    """Mutable holder for the caller the auth override returns."""

    def __init__(self):
        self.user = AuthUser(user_id="learner-1", email="learner-1@example.com")

    def learner(self, user_id: str) -> AuthUser:
        self.user = AuthUser(user_id=user_id, email=f"{user_id}@example.com")
        return self.user

    def staff(self, user_id: str = "staff-1") -> AuthUser:
        self.user = AuthUser(user_id=user_id, email="staff@example.com", role="staff")
        return self.user

    def service(self) -> AuthUser:
        self.user = AuthUser(user_id="service:catalog", role="service_role")
        return self.user


@pytest.fixture
def acting_user() -> ActingUser:
    return ActingUser()


@pytest_asyncio.fixture
async def client(session_factory, acting_user) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient bound to the registration app with DB and auth
    overridden. Each request opens its own session, as in production.
    """
    from services.registration_service.app.main import app

    async def _get_test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = _get_test_db
    app.dependency_overrides[get_current_user] = lambda: acting_user.user

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict:
    """Auth is overridden per test; the header only satisfies HTTPBearer."""
    return {"Authorization": "Bearer mock-token"}
