"""
Shared fixtures for identity service tests.
"""

import os

# Must be set before app modules read settings
os.environ["FLOCK_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["FLOCK_LOG_FORMAT"] = "text"
os.environ["FLOCK_LOG_LEVEL"] = "warning"
os.environ["FLOCK_ROLE_CACHE_BACKEND"] = "memory"
os.environ["FLOCK_SECRET_KEY"] = "test-secret"

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.auth import create_service_token
from app.core.config import Settings
from app.core.database import create_engine, create_session_factory, init_db, session_scope
from app.core.services import build_services
from app.main import create_app
from app.models.credential import Credential
from app.models.membership import Membership
from app.services.sql_store import SqlIdentityStore

from fakes import ADMIN_EMAIL, InMemoryIdentityStore


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'identity.db'}",
        secret_key="test-secret",
        admin_emails=[ADMIN_EMAIL],
        role_cache_backend="memory",
        interactive_timeout_seconds=5.0,
        repair_timeout_seconds=5.0,
        # SQLite serializes writers
        repair_concurrency=1,
        retry_attempts=3,
        retry_base_seconds=0.0,
        log_format="text",
        log_level="warning",
    )


@pytest.fixture
async def engine(settings):
    eng = create_engine(settings.database_url)
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def sql_store(engine) -> SqlIdentityStore:
    return SqlIdentityStore(engine)


@pytest.fixture
def fake_store() -> InMemoryIdentityStore:
    return InMemoryIdentityStore()


@pytest.fixture
def seed(engine):
    """Insert rows straight into the database, bypassing the store."""
    factory = create_session_factory(engine)

    async def _seed(*rows):
        async with session_scope(factory) as session:
            for row in rows:
                session.add(row)
        return rows

    return _seed


@pytest.fixture
def make_credential():
    def _make(identity_id: str, email: str, full_name=None) -> Credential:
        return Credential(id=identity_id, email=email, full_name=full_name)

    return _make


@pytest.fixture
def make_membership():
    def _make(email: str, identity_id=None, **fields) -> Membership:
        fields.setdefault("display_name", email.split("@")[0])
        return Membership(email=email, identity_id=identity_id, **fields)

    return _make


@pytest.fixture
def services(settings, sql_store):
    return build_services(settings, store=sql_store)


@pytest.fixture
async def client(settings, services):
    app = create_app(settings, services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers(settings):
    """Build an Authorization header for a service token holding `scopes`."""

    def _headers(*scopes: str, expires_delta: timedelta | None = None) -> dict:
        token = create_service_token(
            "tests",
            list(scopes),
            secret=settings.secret_key,
            algorithm=settings.jwt_algorithm,
            expires_delta=expires_delta,
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers
