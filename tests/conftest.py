"""
Test Configuration and Fixtures

Provides the async test client, an in-memory SQLite database with the
global roles seeded, and authentication helpers.
"""

import os

os.environ.setdefault("SESSION_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-not-for-production")

from collections.abc import AsyncGenerator
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from registry_auth.config import Settings, require_settings
from registry_auth.db.session import get_db
from registry_auth.main import app
from registry_auth.models.base import Base
from registry_auth.models.organization import Organization
from registry_auth.models.role import Role, RoleName
from registry_auth.models.user import User
from registry_auth.services.auth import LocalPrincipal
from registry_auth.services.memberships import MembershipResolver
from registry_auth.services.providers import ProviderRegistry
from registry_auth.services.session_store import MemorySessionStore
from registry_auth.services.tokens import TokenIssuer
from tests.factories import get_role, make_organization, make_user

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def _enable_savepoints(engine) -> None:
    """pysqlite's implicit transactions break SAVEPOINT; take over BEGIN."""

    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        jwt_secret="test-secret-not-for-production",
        jwt_expiration="24h",
        session_backend="memory",
        frontend_origin="http://frontend.test",
        provisioning_enabled=True,
        provisioning_fallback_action="create_org",
        domain_mapping_enabled=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a clean database session for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _enable_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        session.add_all([Role(name=role.value) for role in RoleName])
        await session.commit()
        yield session

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, settings: Settings) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async test client with dependency overrides and fresh app state."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[require_settings] = lambda: settings

    app.state.provider_registry = ProviderRegistry()
    app.state.session_store = MemorySessionStore()
    app.state.http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(404))
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await app.state.http_client.aclose()
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def test_org(db_session: AsyncSession) -> Organization:
    org = make_organization(name="Test Org")
    db_session.add(org)
    await db_session.commit()
    return org


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession, test_org: Organization) -> User:
    """A local user, admin of Test Org (primary)."""
    user = make_user(
        username="owner",
        email="owner@test.com",
        roles=[await get_role(db_session, RoleName.USER.value)],
    )
    db_session.add(user)
    await db_session.flush()
    await MembershipResolver(db_session).add_membership(user, test_org, role="admin", make_primary=True)
    await db_session.commit()
    return user


@pytest_asyncio.fixture
async def auth_headers(
    db_session: AsyncSession,
    test_user: User,
    settings: Settings,
) -> dict[str, str]:
    """Session token headers for the test user."""
    organizations = await MembershipResolver(db_session).claims_for(test_user.id)
    token = TokenIssuer(settings).issue(LocalPrincipal(test_user), organizations)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def unique_name() -> str:
    return f"org-{uuid4().hex[:8]}"
