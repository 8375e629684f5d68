"""
SQLModel/SQLAlchemy implementation of the identity store.

Conditional writes are single statements so they stay atomic under concurrent
callers:

- insert-if-absent: INSERT ... ON CONFLICT DO NOTHING RETURNING id
- update-if-matching: UPDATE ... WHERE id = :id AND <expected state> RETURNING id

Both PostgreSQL (asyncpg) and SQLite (aiosqlite) support this form.
"""

from __future__ import annotations

import functools
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy import delete, exists, func, text, update
from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import aliased
from sqlmodel import select

from app.core.database import create_session_factory, session_scope
from app.core.errors import ReconciliationConflict, StoreUnavailable
from app.models.base import utcnow
from app.models.credential import Credential
from app.models.membership import Membership
from app.models.profile import Profile
from app.models.role_grant import RoleGrant
from app.services.store import IdentityStore

log = structlog.get_logger()

_current_session: ContextVar[Optional[AsyncSession]] = ContextVar(
    "identity_store_session", default=None
)

# Driver-level failures that mean "the store is not reachable right now"
_TRANSIENT_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
    ConnectionError,
    OSError,
)


def _translated(fn):
    """Map connectivity failures onto StoreUnavailable."""

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except _TRANSIENT_ERRORS as exc:
            log.warning("store.unavailable", operation=fn.__name__, error=str(exc))
            raise StoreUnavailable(fn.__name__, cause=type(exc).__name__) from exc

    return wrapper


def _integrity_conflict(identity_id: str, email: str, exc: sa_exc.IntegrityError) -> ReconciliationConflict:
    """A constraint (unique link, foreign key) rejected a reconcile write."""
    log.warning("store.integrity_conflict", identity_id=identity_id, error=str(exc.orig))
    return ReconciliationConflict(identity_id, email, "write rejected by a database constraint")


class SqlIdentityStore(IdentityStore):
    """Identity store backed by the relational database."""

    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._session_factory = create_session_factory(engine)
        self._dialect = engine.dialect.name

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    def _insert(self, model):
        if self._dialect == "postgresql":
            return pg_insert(model)
        if self._dialect == "sqlite":
            return sqlite_insert(model)
        raise RuntimeError(f"Unsupported dialect for conditional insert: {self._dialect}")

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Current unit-of-work session, or a short-lived one committed on exit."""
        current = _current_session.get()
        if current is not None:
            yield current
            return
        async with session_scope(self._session_factory) as session:
            yield session

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[None]:
        if _current_session.get() is not None:
            # Nested scopes join the outer transaction
            yield
            return
        try:
            async with session_scope(self._session_factory) as session:
                token = _current_session.set(session)
                try:
                    yield
                finally:
                    _current_session.reset(token)
        except _TRANSIENT_ERRORS as exc:
            raise StoreUnavailable("unit_of_work", cause=type(exc).__name__) from exc

    @_translated
    async def ping(self) -> None:
        async with self._session() as session:
            await session.execute(text("SELECT 1"))

    # --- Credentials ---

    @_translated
    async def get_credential(self, identity_id: str) -> Optional[Credential]:
        async with self._session() as session:
            result = await session.execute(select(Credential).where(Credential.id == identity_id))
            return result.scalar_one_or_none()

    @_translated
    async def get_credential_by_email(self, email: str) -> list[Credential]:
        async with self._session() as session:
            result = await session.execute(
                select(Credential).where(func.lower(Credential.email) == email.lower())
            )
            return list(result.scalars().all())

    @_translated
    async def list_credentials(self, *, after: Optional[str], limit: int) -> list[Credential]:
        query = select(Credential).order_by(Credential.id).limit(limit)
        if after is not None:
            query = query.where(Credential.id > after)
        async with self._session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    # --- Profiles ---

    @_translated
    async def get_profile(self, identity_id: str) -> Optional[Profile]:
        async with self._session() as session:
            result = await session.execute(select(Profile).where(Profile.id == identity_id))
            return result.scalar_one_or_none()

    @_translated
    async def insert_profile_if_absent(self, profile: Profile) -> bool:
        stmt = (
            self._insert(Profile)
            .values(**profile.model_dump())
            .on_conflict_do_nothing(index_elements=["id"])
            .returning(Profile.id)
        )
        async with self._session() as session:
            try:
                result = await session.execute(stmt)
            except sa_exc.IntegrityError as exc:
                raise _integrity_conflict(profile.id, profile.email, exc) from exc
            return result.first() is not None

    @_translated
    async def update_profile_email(self, identity_id: str, *, expected: str, email: str) -> bool:
        stmt = (
            update(Profile)
            .where(Profile.id == identity_id, Profile.email == expected)
            .values(email=email, updated_at=utcnow())
            .returning(Profile.id)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.first() is not None

    @_translated
    async def delete_profile(self, identity_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(Profile).where(Profile.id == identity_id).returning(Profile.id)
            )
            return result.first() is not None

    # --- Memberships ---

    @_translated
    async def get_membership_by_identity(self, identity_id: str) -> Optional[Membership]:
        async with self._session() as session:
            result = await session.execute(
                select(Membership).where(Membership.identity_id == identity_id)
            )
            return result.scalar_one_or_none()

    @_translated
    async def find_memberships_by_email(self, email: str) -> list[Membership]:
        async with self._session() as session:
            result = await session.execute(
                select(Membership)
                .where(func.lower(Membership.email) == email.lower())
                .order_by(Membership.joined_at)
            )
            return list(result.scalars().all())

    @_translated
    async def insert_membership_if_absent(self, membership: Membership) -> bool:
        stmt = (
            self._insert(Membership)
            .values(**membership.model_dump())
            .on_conflict_do_nothing(index_elements=["identity_id"])
            .returning(Membership.id)
        )
        async with self._session() as session:
            try:
                result = await session.execute(stmt)
            except sa_exc.IntegrityError as exc:
                raise _integrity_conflict(membership.identity_id, membership.email, exc) from exc
            return result.first() is not None

    @_translated
    async def adopt_membership(
        self,
        membership_id: uuid.UUID,
        *,
        expected_identity_id: Optional[str],
        identity_id: str,
        email: str,
    ) -> bool:
        if expected_identity_id is None:
            matches = Membership.identity_id.is_(None)
        else:
            matches = Membership.identity_id == expected_identity_id
        # One membership per identity: refuse rather than trip the unique index
        linked = aliased(Membership)
        already_linked = exists().where(linked.identity_id == identity_id)
        stmt = (
            update(Membership)
            .where(Membership.id == membership_id, matches, ~already_linked)
            .values(identity_id=identity_id, email=email)
            .returning(Membership.id)
        )
        async with self._session() as session:
            try:
                result = await session.execute(stmt)
            except sa_exc.IntegrityError as exc:
                raise _integrity_conflict(identity_id, email, exc) from exc
            return result.first() is not None

    @_translated
    async def update_membership_email(
        self, membership_id: uuid.UUID, *, expected: str, email: str
    ) -> bool:
        stmt = (
            update(Membership)
            .where(Membership.id == membership_id, Membership.email == expected)
            .values(email=email)
            .returning(Membership.id)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.first() is not None

    @_translated
    async def delete_membership(self, identity_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(Membership)
                .where(Membership.identity_id == identity_id)
                .returning(Membership.id)
            )
            return result.first() is not None

    # --- Role grants ---

    @_translated
    async def list_role_grants(self, identity_id: str) -> list[RoleGrant]:
        async with self._session() as session:
            result = await session.execute(
                select(RoleGrant)
                .where(RoleGrant.identity_id == identity_id)
                .order_by(RoleGrant.granted_at)
            )
            return list(result.scalars().all())

    @_translated
    async def add_role_grant(self, grant: RoleGrant) -> RoleGrant:
        async with self._session() as session:
            session.add(grant)
            await session.flush()
            return grant

    @_translated
    async def revoke_role_grant(
        self, grant_id: uuid.UUID, *, revoked_by: str
    ) -> Optional[RoleGrant]:
        stmt = (
            update(RoleGrant)
            .where(RoleGrant.id == grant_id, RoleGrant.revoked.is_(False))
            .values(revoked=True, revoked_at=utcnow(), revoked_by=revoked_by)
            .returning(RoleGrant.id)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            if result.first() is None:
                return None
            refreshed = await session.execute(
                select(RoleGrant)
                .where(RoleGrant.id == grant_id)
                .execution_options(populate_existing=True)
            )
            return refreshed.scalar_one()
