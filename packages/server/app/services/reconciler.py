"""
Identity reconciler.

Given a Credential (the authoritative identity anchor), ensures exactly one
Profile and one Membership exist for it, linked by the credential id, with no
contradictory email. Runs on registration, on login and from repair runs.

The algorithm plans before it writes: all reads and conflict checks happen
first, so a ReconciliationConflict aborts with nothing written. Every write is
conditional (insert-if-absent or update-if-matching); when a concurrent
reconciliation wins a race the loser re-reads and converges on the winner's
row instead of creating a second one.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Optional

import structlog

from flock_shared.schemas.common import MembershipCategory, ReconcileOutcome

from app.core.errors import NotFound, ReconciliationConflict
from app.models.credential import Credential
from app.models.membership import Membership
from app.models.profile import Profile
from app.services.normalizer import normalize
from app.services.store import Deadline, IdentityStore, bounded

if TYPE_CHECKING:
    from app.services.role_cache import RoleCache

log = structlog.get_logger()

# Attempts at a compare-and-set before giving up on a field that keeps moving
CAS_ATTEMPTS = 2


@dataclass(frozen=True)
class Correction:
    field: str
    old: Optional[str]
    new: Optional[str]

    def to_dict(self) -> dict:
        return {"field": self.field, "old": self.old, "new": self.new}


@dataclass
class ReconcileResult:
    identity_id: str
    outcomes: set[ReconcileOutcome] = field(default_factory=set)
    corrections: list[Correction] = field(default_factory=list)
    membership_id: Optional[str] = None
    dry_run: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.outcomes - {ReconcileOutcome.NO_CHANGE})

    def finalize(self) -> "ReconcileResult":
        if not self.outcomes:
            self.outcomes.add(ReconcileOutcome.NO_CHANGE)
        return self

    def sorted_outcomes(self) -> list[ReconcileOutcome]:
        return sorted(self.outcomes, key=lambda o: o.value)

    def to_dict(self) -> dict:
        return {
            "identity_id": self.identity_id,
            "outcomes": [o.value for o in self.sorted_outcomes()],
            "corrections": [c.to_dict() for c in self.corrections],
            "membership_id": self.membership_id,
            "dry_run": self.dry_run,
        }


@dataclass
class _Plan:
    """Everything read before the first write."""

    credential: Credential
    email: str
    name: str
    profile: Optional[Profile]
    membership: Optional[Membership]
    legacy: Optional[Membership]


class ReconcileTracker:
    """In-process registry of reconciliations currently running, per identity."""

    def __init__(self) -> None:
        self._running: dict[str, int] = defaultdict(int)
        self._idle: dict[str, asyncio.Event] = {}

    def in_flight(self, identity_id: str) -> bool:
        return self._running.get(identity_id, 0) > 0

    @asynccontextmanager
    async def track(self, identity_id: str) -> AsyncIterator[None]:
        self._running[identity_id] += 1
        idle = self._idle.setdefault(identity_id, asyncio.Event())
        idle.clear()
        try:
            yield
        finally:
            self._running[identity_id] -= 1
            if self._running[identity_id] <= 0:
                del self._running[identity_id]
                self._idle.pop(identity_id, None)
                idle.set()

    async def wait_idle(self, identity_id: str, timeout: Optional[float]) -> bool:
        """Wait until no reconciliation of `identity_id` is running. False on timeout."""
        idle = self._idle.get(identity_id)
        if idle is None:
            return True
        try:
            await asyncio.wait_for(idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


class Reconciler:
    """Creates, adopts and corrects Profile and Membership records for a Credential."""

    def __init__(
        self,
        store: IdentityStore,
        *,
        tracker: Optional[ReconcileTracker] = None,
        role_cache: Optional["RoleCache"] = None,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.tracker = tracker if tracker is not None else ReconcileTracker()
        self.role_cache = role_cache
        self.timeout = timeout

    async def reconcile_identity(
        self, identity_id: str, *, timeout: Optional[float] = None, dry_run: bool = False
    ) -> ReconcileResult:
        """Look up the credential by id, then reconcile it."""
        deadline = Deadline(timeout if timeout is not None else self.timeout)
        credential = await bounded(
            self.store.get_credential(identity_id), deadline, operation="get_credential"
        )
        if credential is None:
            raise NotFound("credential", identity_id)
        return await self.reconcile(credential, timeout=deadline.remaining(), dry_run=dry_run)

    async def reconcile(
        self,
        credential: Credential,
        *,
        timeout: Optional[float] = None,
        dry_run: bool = False,
    ) -> ReconcileResult:
        if not credential.id:
            raise NotFound("credential", "")
        email, name = normalize(credential.email, credential.full_name)
        deadline = Deadline(timeout if timeout is not None else self.timeout)

        async with self.tracker.track(credential.id):
            async with self.store.unit_of_work():
                plan = await self._plan(credential, email, name, deadline)
                if dry_run:
                    result = self._predict(plan)
                else:
                    result = await self._apply(plan, deadline)

        result.finalize()
        if result.changed and not dry_run:
            log.info(
                "identity.reconciled",
                identity_id=credential.id,
                outcomes=[o.value for o in result.sorted_outcomes()],
            )
            if self.role_cache is not None:
                await self.role_cache.invalidate(credential.id)
        return result

    async def purge(self, identity_id: str, *, timeout: Optional[float] = None) -> dict:
        """Remove Profile and Membership of a deleted credential."""
        deadline = Deadline(timeout if timeout is not None else self.timeout)
        async with self.store.unit_of_work():
            profile_deleted = await bounded(
                self.store.delete_profile(identity_id), deadline, operation="delete_profile"
            )
            membership_deleted = await bounded(
                self.store.delete_membership(identity_id), deadline, operation="delete_membership"
            )
        if self.role_cache is not None:
            await self.role_cache.invalidate(identity_id)
        log.info(
            "identity.purged",
            identity_id=identity_id,
            profile=profile_deleted,
            membership=membership_deleted,
        )
        return {"profile": profile_deleted, "membership": membership_deleted}

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def _plan(
        self, credential: Credential, email: str, name: str, deadline: Deadline
    ) -> _Plan:
        identity_id = credential.id
        profile = await bounded(
            self.store.get_profile(identity_id), deadline, operation="get_profile"
        )
        membership = await bounded(
            self.store.get_membership_by_identity(identity_id),
            deadline,
            operation="get_membership_by_identity",
        )
        legacy = None
        if membership is None:
            legacy = await self._find_adoptable(identity_id, email, deadline)
        return _Plan(
            credential=credential,
            email=email,
            name=name,
            profile=profile,
            membership=membership,
            legacy=legacy,
        )

    async def _find_adoptable(
        self, identity_id: str, email: str, deadline: Deadline
    ) -> Optional[Membership]:
        """Pick the single legacy membership this identity may adopt, or raise on ambiguity."""
        candidates = await bounded(
            self.store.find_memberships_by_email(email),
            deadline,
            operation="find_memberships_by_email",
        )
        orphans: list[Membership] = []
        claimed: list[Membership] = []
        for candidate in candidates:
            if candidate.identity_id == identity_id:
                continue
            if candidate.identity_id is None:
                orphans.append(candidate)
                continue
            owner = await bounded(
                self.store.get_credential(candidate.identity_id),
                deadline,
                operation="get_credential",
            )
            # A link to a credential that no longer exists is as good as no link
            (orphans if owner is None else claimed).append(candidate)

        if claimed:
            raise self._conflict(
                identity_id, email, "email already linked to another identity", claimed + orphans
            )
        if len(orphans) > 1:
            raise self._conflict(
                identity_id, email, "multiple legacy memberships share this email", orphans
            )
        return orphans[0] if orphans else None

    def _conflict(
        self, identity_id: str, email: str, reason: str, records: list[Membership]
    ) -> ReconciliationConflict:
        detail = [
            {"membership_id": str(m.id), "identity_id": m.identity_id, "email": m.email}
            for m in records
        ]
        log.warning(
            "identity.conflict",
            identity_id=identity_id,
            email=email,
            reason=reason,
            records=detail,
        )
        return ReconciliationConflict(identity_id, email, reason, detail)

    def _predict(self, plan: _Plan) -> ReconcileResult:
        """Outcomes an apply would produce, without writing (audit mode)."""
        result = ReconcileResult(identity_id=plan.credential.id, dry_run=True)
        if plan.profile is None:
            result.outcomes.add(ReconcileOutcome.PROFILE_CREATED)
        elif plan.profile.email != plan.email:
            result.outcomes.add(ReconcileOutcome.PROFILE_CORRECTED)
            result.corrections.append(Correction("profile.email", plan.profile.email, plan.email))

        if plan.membership is not None:
            result.membership_id = str(plan.membership.id)
            if plan.membership.email != plan.email:
                result.outcomes.add(ReconcileOutcome.MEMBERSHIP_CORRECTED)
                result.corrections.append(
                    Correction("membership.email", plan.membership.email, plan.email)
                )
        elif plan.legacy is not None:
            result.membership_id = str(plan.legacy.id)
            result.outcomes.add(ReconcileOutcome.MEMBERSHIP_ADOPTED)
        else:
            result.outcomes.add(ReconcileOutcome.MEMBERSHIP_CREATED)
        return result

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    async def _apply(self, plan: _Plan, deadline: Deadline) -> ReconcileResult:
        result = ReconcileResult(identity_id=plan.credential.id)
        await self._ensure_profile(plan, result, deadline)
        membership = await self._ensure_membership(plan, result, deadline)
        await self._sync_membership_email(plan, membership, result, deadline)
        result.membership_id = str(membership.id)
        return result

    async def _ensure_profile(self, plan: _Plan, result: ReconcileResult, deadline: Deadline) -> None:
        identity_id = plan.credential.id
        profile = plan.profile
        if profile is None:
            created = await bounded(
                self.store.insert_profile_if_absent(
                    Profile(id=identity_id, email=plan.email, full_name=plan.name)
                ),
                deadline,
                operation="insert_profile_if_absent",
            )
            if created:
                result.outcomes.add(ReconcileOutcome.PROFILE_CREATED)
                return
            # A concurrent reconciliation created it first
            profile = await bounded(
                self.store.get_profile(identity_id), deadline, operation="get_profile"
            )
            if profile is None:
                raise self._conflict(identity_id, plan.email, "profile vanished during reconcile", [])

        for _ in range(CAS_ATTEMPTS):
            if profile.email == plan.email:
                return
            old = profile.email
            updated = await bounded(
                self.store.update_profile_email(identity_id, expected=old, email=plan.email),
                deadline,
                operation="update_profile_email",
            )
            if updated:
                result.outcomes.add(ReconcileOutcome.PROFILE_CORRECTED)
                result.corrections.append(Correction("profile.email", old, plan.email))
                log.info("identity.profile_corrected", identity_id=identity_id, old=old, new=plan.email)
                return
            profile = await bounded(
                self.store.get_profile(identity_id), deadline, operation="get_profile"
            )
            if profile is None:
                raise self._conflict(identity_id, plan.email, "profile vanished during reconcile", [])
        if profile.email != plan.email:
            raise self._conflict(
                identity_id, plan.email, "profile email keeps changing concurrently", []
            )

    async def _ensure_membership(
        self, plan: _Plan, result: ReconcileResult, deadline: Deadline
    ) -> Membership:
        identity_id = plan.credential.id
        if plan.membership is not None:
            return plan.membership

        if plan.legacy is not None:
            adopted = await bounded(
                self.store.adopt_membership(
                    plan.legacy.id,
                    expected_identity_id=plan.legacy.identity_id,
                    identity_id=identity_id,
                    email=plan.email,
                ),
                deadline,
                operation="adopt_membership",
            )
            if adopted:
                result.outcomes.add(ReconcileOutcome.MEMBERSHIP_ADOPTED)
                log.info(
                    "identity.membership_adopted",
                    identity_id=identity_id,
                    membership_id=str(plan.legacy.id),
                    previous_identity_id=plan.legacy.identity_id,
                )
        else:
            created = await bounded(
                self.store.insert_membership_if_absent(
                    Membership(
                        identity_id=identity_id,
                        email=plan.email,
                        display_name=plan.name,
                        category=MembershipCategory.MEMBER.value,
                        active=True,
                    )
                ),
                deadline,
                operation="insert_membership_if_absent",
            )
            if created:
                result.outcomes.add(ReconcileOutcome.MEMBERSHIP_CREATED)

        # Whether we won or lost the race, the row linked to this identity is the answer
        membership = await bounded(
            self.store.get_membership_by_identity(identity_id),
            deadline,
            operation="get_membership_by_identity",
        )
        if membership is None:
            records = [plan.legacy] if plan.legacy is not None else []
            raise self._conflict(
                identity_id, plan.email, "legacy membership was claimed concurrently", records
            )
        return membership

    async def _sync_membership_email(
        self,
        plan: _Plan,
        membership: Membership,
        result: ReconcileResult,
        deadline: Deadline,
    ) -> None:
        if membership.email == plan.email:
            return
        old = membership.email
        updated = await bounded(
            self.store.update_membership_email(membership.id, expected=old, email=plan.email),
            deadline,
            operation="update_membership_email",
        )
        if updated:
            result.outcomes.add(ReconcileOutcome.MEMBERSHIP_CORRECTED)
            result.corrections.append(Correction("membership.email", old, plan.email))
