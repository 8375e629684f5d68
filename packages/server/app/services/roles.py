"""
Role resolver: the single place that decides an identity's effective role.

Precedence, first match wins:

1. active SuperAdmin grant        -> super-admin  (grant)
2. active Admin grant             -> admin        (grant)
3. email in the admin allowlist   -> admin        (allowlist)
4. active membership whose category
   is Administrator or Leader     -> admin        (membership-category, advisory)
5. otherwise                      -> member       (default)

A lookup that fails while its answer could still change the outcome makes the
whole resolution fail with ResolutionUnavailable. There is no fallback role.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import structlog

from flock_shared.schemas.common import (
    SOURCE_TRUST,
    GrantRole,
    MembershipCategory,
    RoleKind,
    RoleSource,
    TrustLevel,
)

from app.core.errors import NotFound, ResolutionUnavailable, StoreUnavailable
from app.models.base import utcnow
from app.models.role_grant import RoleGrant
from app.services.allowlist import AdminAllowlist
from app.services.normalizer import parse_category
from app.services.reconciler import ReconcileTracker
from app.services.role_cache import NullRoleCache, RoleCache
from app.services.store import Deadline, IdentityStore, bounded

log = structlog.get_logger()

_ADVISORY_ADMIN_CATEGORIES = {MembershipCategory.ADMINISTRATOR, MembershipCategory.LEADER}


@dataclass(frozen=True)
class EffectiveRole:
    role: RoleKind
    source: RoleSource
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    pending_reconcile: bool = False

    @property
    def trust(self) -> TrustLevel:
        return SOURCE_TRUST[self.source]

    @property
    def is_elevated(self) -> bool:
        return self.role in (RoleKind.ADMIN, RoleKind.SUPER_ADMIN)

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "source": self.source.value,
            "trust": self.trust.value,
            "computed_at": self.computed_at.isoformat(),
            "pending_reconcile": self.pending_reconcile,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EffectiveRole":
        return cls(
            role=RoleKind(data["role"]),
            source=RoleSource(data["source"]),
            computed_at=datetime.fromisoformat(data["computed_at"]),
            pending_reconcile=bool(data.get("pending_reconcile", False)),
        )


def compare_hint(identity_id: str, hint: Optional[str], fresh: EffectiveRole) -> bool:
    """Check a client-held role hint against the fresh result.

    Returns True when the hint disagreed and has to be overwritten by the caller.
    The hint never influences the resolution itself.
    """
    if hint is None:
        return False
    try:
        hinted = RoleKind(hint.strip().lower())
    except ValueError:
        hinted = None
    if hinted == fresh.role:
        return False
    log.warning(
        "role.hint_overridden",
        identity_id=identity_id,
        hint=hint,
        role=fresh.role.value,
        source=fresh.source.value,
    )
    return True


class RoleResolver:
    def __init__(
        self,
        store: IdentityStore,
        allowlist: AdminAllowlist,
        *,
        cache: Optional[RoleCache] = None,
        tracker: Optional[ReconcileTracker] = None,
        cache_ttl_seconds: int = 30,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.allowlist = allowlist
        self.cache = cache if cache is not None else NullRoleCache()
        self.tracker = tracker if tracker is not None else ReconcileTracker()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timeout = timeout

    async def resolve_role(
        self,
        identity_id: str,
        *,
        timeout: Optional[float] = None,
        use_cache: bool = True,
    ) -> EffectiveRole:
        deadline = Deadline(timeout if timeout is not None else self.timeout)

        if self.allowlist.maybe_refresh():
            await self.cache.clear()

        pending = False
        if self.tracker.in_flight(identity_id):
            # A result computed mid-reconcile is not final; wait for it to settle,
            # keeping half the budget for the lookups themselves
            remaining = deadline.remaining()
            wait = None if remaining is None else max(remaining, 0) / 2
            settled = await self.tracker.wait_idle(identity_id, wait)
            pending = not settled
        elif use_cache:
            cached = await self.cache.get(identity_id)
            if cached is not None:
                return cached

        # Taken before resolving so an invalidation that lands mid-resolve wins
        generation = await self.cache.generation(identity_id)
        effective = await self._resolve(identity_id, deadline)
        if pending:
            effective = EffectiveRole(
                role=effective.role,
                source=effective.source,
                computed_at=effective.computed_at,
                pending_reconcile=True,
            )
        else:
            await self.cache.set(
                identity_id, effective, self.cache_ttl_seconds, generation=generation
            )
        return effective

    async def _resolve(self, identity_id: str, deadline: Deadline) -> EffectiveRole:
        try:
            credential = await bounded(
                self.store.get_credential(identity_id), deadline, operation="get_credential"
            )
        except StoreUnavailable as exc:
            raise ResolutionUnavailable(identity_id, cause=exc.operation) from exc
        if credential is None:
            raise NotFound("credential", identity_id)

        try:
            grants = await bounded(
                self.store.list_role_grants(identity_id), deadline, operation="list_role_grants"
            )
        except StoreUnavailable as exc:
            raise ResolutionUnavailable(identity_id, cause=exc.operation) from exc

        now = utcnow()
        active = {g.role for g in grants if g.is_active(now)}
        if GrantRole.SUPER_ADMIN.value in active:
            return self._decided(identity_id, RoleKind.SUPER_ADMIN, RoleSource.GRANT)
        if GrantRole.ADMIN.value in active:
            return self._decided(identity_id, RoleKind.ADMIN, RoleSource.GRANT)

        if credential.email in self.allowlist:
            return self._decided(identity_id, RoleKind.ADMIN, RoleSource.ALLOWLIST)

        try:
            membership = await bounded(
                self.store.get_membership_by_identity(identity_id),
                deadline,
                operation="get_membership_by_identity",
            )
        except StoreUnavailable as exc:
            raise ResolutionUnavailable(identity_id, cause=exc.operation) from exc

        if membership is not None and membership.active:
            category = parse_category(membership.category)
            if category in _ADVISORY_ADMIN_CATEGORIES:
                log.info(
                    "role.advisory_admin",
                    identity_id=identity_id,
                    category=category.value,
                    membership_id=str(membership.id),
                )
                return EffectiveRole(RoleKind.ADMIN, RoleSource.MEMBERSHIP_CATEGORY)

        return self._decided(identity_id, RoleKind.MEMBER, RoleSource.DEFAULT)

    def _decided(self, identity_id: str, role: RoleKind, source: RoleSource) -> EffectiveRole:
        log.debug("role.resolved", identity_id=identity_id, role=role.value, source=source.value)
        return EffectiveRole(role, source)

    async def invalidate(self, identity_id: str) -> None:
        await self.cache.invalidate(identity_id)

    # ------------------------------------------------------------------
    # Grant management (append-only)
    # ------------------------------------------------------------------

    async def list_grants(
        self, identity_id: str, *, timeout: Optional[float] = None
    ) -> list[RoleGrant]:
        deadline = Deadline(timeout if timeout is not None else self.timeout)
        await self._require_credential(identity_id, deadline)
        return await bounded(
            self.store.list_role_grants(identity_id), deadline, operation="list_role_grants"
        )

    async def grant(
        self,
        identity_id: str,
        role: GrantRole,
        granted_by: str,
        *,
        expires_at: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> RoleGrant:
        deadline = Deadline(timeout if timeout is not None else self.timeout)
        await self._require_credential(identity_id, deadline)
        grant = await bounded(
            self.store.add_role_grant(
                RoleGrant(
                    identity_id=identity_id,
                    role=GrantRole(role).value,
                    granted_by=granted_by,
                    expires_at=expires_at,
                )
            ),
            deadline,
            operation="add_role_grant",
        )
        await self.cache.invalidate(identity_id)
        log.info(
            "role.granted",
            identity_id=identity_id,
            role=grant.role,
            granted_by=granted_by,
            grant_id=str(grant.id),
        )
        return grant

    async def revoke(
        self,
        identity_id: str,
        grant_id,
        revoked_by: str,
        *,
        timeout: Optional[float] = None,
    ) -> RoleGrant:
        deadline = Deadline(timeout if timeout is not None else self.timeout)
        grants = await self.list_grants(identity_id, timeout=deadline.remaining())
        grant = next((g for g in grants if str(g.id) == str(grant_id)), None)
        if grant is None:
            raise NotFound("role grant", str(grant_id))
        if grant.revoked:
            return grant
        revoked = await bounded(
            self.store.revoke_role_grant(grant.id, revoked_by=revoked_by),
            deadline,
            operation="revoke_role_grant",
        )
        await self.cache.invalidate(identity_id)
        if revoked is None:
            # Someone else revoked it between our read and write
            return grant
        log.info(
            "role.revoked",
            identity_id=identity_id,
            grant_id=str(grant.id),
            revoked_by=revoked_by,
        )
        return revoked

    async def revoke_all(
        self, identity_id: str, revoked_by: str, *, timeout: Optional[float] = None
    ) -> int:
        """Revoke every active grant of an identity (used when it is deleted)."""
        deadline = Deadline(timeout if timeout is not None else self.timeout)
        grants = await bounded(
            self.store.list_role_grants(identity_id), deadline, operation="list_role_grants"
        )
        count = 0
        for grant in grants:
            if grant.revoked:
                continue
            revoked = await bounded(
                self.store.revoke_role_grant(grant.id, revoked_by=revoked_by),
                deadline,
                operation="revoke_role_grant",
            )
            if revoked is not None:
                count += 1
        await self.cache.invalidate(identity_id)
        if count:
            log.info("role.revoked_all", identity_id=identity_id, count=count, revoked_by=revoked_by)
        return count

    async def _require_credential(self, identity_id: str, deadline: Deadline) -> None:
        credential = await bounded(
            self.store.get_credential(identity_id), deadline, operation="get_credential"
        )
        if credential is None:
            raise NotFound("credential", identity_id)
