"""Shared test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (aiosqlite + StaticPool), so
tests can commit freely. Stripe is never reached: the secret key is left unset
so any call that slips past a mock fails fast with ProviderOther.
"""

import os

os.environ.update(
    {
        "ENVIRONMENT": "test",
        "JWT_SECRET": "test-secret-key-not-for-production",
        "STRIPE_SECRET_KEY": "",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_secret",
        "STRIPE_PRICE_1_MONTH": "price_1m",
        "STRIPE_PRICE_3_MONTH": "price_3m",
        "STRIPE_PRICE_6_MONTH": "price_6m",
        "STRIPE_PRICE_12_MONTH": "price_12m",
        "MAINTENANCE_ENABLED": "false",
    }
)

from collections.abc import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from fitapp.billing import plans  # noqa: E402
from fitapp.database import Base, get_db  # noqa: E402
from fitapp.main import app  # noqa: E402
from fitapp.models.user import User  # noqa: E402

from billing_factories import bearer, create_user  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def _enable_savepoints(engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT (begin_nested) works on pysqlite."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest_asyncio.fixture
async def test_engine():
    """Create a per-test engine with all tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _enable_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to use the test DB session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _reset_price_cache():
    plans.reset_price_cache()
    yield
    plans.reset_price_cache()


# ---------------------------------------------------------------------------
# Convenience fixtures: users and auth headers
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    return await create_user(db_session)


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return bearer(test_user)


@pytest_asyncio.fixture
async def other_user(db_session: AsyncSession) -> User:
    return await create_user(db_session, first_name="Other")


@pytest_asyncio.fixture
async def other_auth_headers(other_user: User) -> dict[str, str]:
    return bearer(other_user)
