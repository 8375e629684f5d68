"""
Reconciler tests against the in-memory store.

Tests cover:
- Creating, adopting and correcting records
- Idempotence of repeated reconciliation
- Conflicts abort before any write
- Concurrent reconciliations converge on one membership
- Dry runs, purges, deadlines and store failures
"""

from __future__ import annotations

import asyncio

import pytest

from app.core.errors import InvalidEmail, NotFound, ReconciliationConflict, StoreTimeout, StoreUnavailable
from app.models.profile import Profile
from app.services.reconciler import ReconcileTracker, Reconciler
from app.services.role_cache import MemoryRoleCache
from app.services.roles import EffectiveRole
from flock_shared.schemas.common import ReconcileOutcome, RoleKind, RoleSource

from fakes import InMemoryIdentityStore

Outcome = ReconcileOutcome


@pytest.fixture
def store() -> InMemoryIdentityStore:
    return InMemoryIdentityStore()


@pytest.fixture
def reconciler(store) -> Reconciler:
    return Reconciler(store, timeout=2.0)


def _membership_state(store: InMemoryIdentityStore) -> dict:
    return {m.id: (m.identity_id, m.email, m.category) for m in store.memberships.values()}


# ---------------------------------------------------------------------------
# Creating and adopting
# ---------------------------------------------------------------------------

class TestCreate:
    async def test_new_identity_gets_profile_and_membership(self, store, reconciler):
        store.add_credential("u1", "Pat@Org.com")

        result = await reconciler.reconcile_identity("u1")

        assert result.outcomes == {Outcome.PROFILE_CREATED, Outcome.MEMBERSHIP_CREATED}
        profile = store.profiles["u1"]
        assert profile.email == "pat@org.com"
        assert profile.full_name == "pat"
        [membership] = store.memberships_for("u1")
        assert membership.email == "pat@org.com"
        assert membership.category == "Member"
        assert membership.active is True
        assert result.membership_id == str(membership.id)

    async def test_signup_name_is_used_when_present(self, store, reconciler):
        store.add_credential("u1", "pat@org.com", full_name="  Pat Jones ")
        await reconciler.reconcile_identity("u1")
        assert store.profiles["u1"].full_name == "Pat Jones"
        assert store.memberships_for("u1")[0].display_name == "Pat Jones"

    async def test_unknown_credential_is_not_found(self, reconciler):
        with pytest.raises(NotFound):
            await reconciler.reconcile_identity("nobody")

    async def test_invalid_email_writes_nothing(self, store, reconciler):
        store.add_credential("u1", "   ")
        with pytest.raises(InvalidEmail):
            await reconciler.reconcile_identity("u1")
        assert store.writes == 0


class TestAdopt:
    async def test_legacy_membership_is_adopted(self, store, reconciler):
        store.add_credential("u1", "Pat@Org.com")
        legacy = store.add_membership("pat@org.com", category="Administrator")

        result = await reconciler.reconcile_identity("u1")

        assert Outcome.MEMBERSHIP_ADOPTED in result.outcomes
        assert Outcome.MEMBERSHIP_CREATED not in result.outcomes
        assert store.memberships[legacy.id].identity_id == "u1"
        assert len(store.memberships) == 1
        assert result.membership_id == str(legacy.id)

    async def test_membership_linked_to_deleted_credential_is_adopted(self, store, reconciler):
        store.add_credential("u1", "pat@org.com")
        stale = store.add_membership("PAT@org.com", identity_id="deleted-user")

        result = await reconciler.reconcile_identity("u1")

        assert Outcome.MEMBERSHIP_ADOPTED in result.outcomes
        assert store.memberships[stale.id].identity_id == "u1"
        assert store.memberships[stale.id].email == "pat@org.com"

    async def test_adopted_membership_keeps_category(self, store, reconciler):
        store.add_credential("u1", "pat@org.com")
        legacy = store.add_membership("pat@org.com", category="Pastors")
        await reconciler.reconcile_identity("u1")
        assert store.memberships[legacy.id].category == "Pastors"


# ---------------------------------------------------------------------------
# Idempotence
# ---------------------------------------------------------------------------

class TestIdempotence:
    @pytest.mark.parametrize("runs", [2, 5])
    async def test_only_first_run_changes_anything(self, store, reconciler, runs):
        store.add_credential("u1", "Pat@Org.com")
        store.add_membership("pat@org.com", category="Leader")

        first = await reconciler.reconcile_identity("u1")
        state = (dict(store.profiles), _membership_state(store))
        writes = store.writes

        for _ in range(runs - 1):
            again = await reconciler.reconcile_identity("u1")
            assert again.outcomes == {Outcome.NO_CHANGE}
            assert not again.changed

        assert first.changed
        assert store.writes == writes
        assert (dict(store.profiles), _membership_state(store)) == state


# ---------------------------------------------------------------------------
# Corrections
# ---------------------------------------------------------------------------

class TestCorrections:
    async def test_profile_email_follows_credential(self, store, reconciler):
        store.add_credential("u1", "pat@org.com")
        await reconciler.reconcile_identity("u1")
        store.credentials["u1"].email = "Pat.New@Org.com"

        result = await reconciler.reconcile_identity("u1")

        assert Outcome.PROFILE_CORRECTED in result.outcomes
        assert Outcome.MEMBERSHIP_CORRECTED in result.outcomes
        assert store.profiles["u1"].email == "pat.new@org.com"
        assert store.memberships_for("u1")[0].email == "pat.new@org.com"
        fields = {c.field: (c.old, c.new) for c in result.corrections}
        assert fields["profile.email"] == ("pat@org.com", "pat.new@org.com")
        assert fields["membership.email"] == ("pat@org.com", "pat.new@org.com")

    async def test_existing_profile_is_not_recreated(self, store, reconciler):
        store.add_credential("u1", "pat@org.com")
        store.profiles["u1"] = Profile(id="u1", email="PAT@old.org", full_name="Pat")

        result = await reconciler.reconcile_identity("u1")

        assert Outcome.PROFILE_CREATED not in result.outcomes
        assert Outcome.PROFILE_CORRECTED in result.outcomes
        assert store.profiles["u1"].full_name == "Pat"


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------

class TestConflicts:
    async def test_second_identity_with_same_email_conflicts(self, store, reconciler):
        store.add_credential("u1", "Dup@org.com")
        store.add_credential("u2", "dup@org.com")
        store.add_membership("dup@org.com")

        await reconciler.reconcile_identity("u1")
        before = _membership_state(store)
        writes = store.writes

        with pytest.raises(ReconciliationConflict) as excinfo:
            await reconciler.reconcile_identity("u2")

        assert _membership_state(store) == before
        assert store.writes == writes
        assert "u2" not in store.profiles
        assert store.memberships_for("u2") == []
        conflict = excinfo.value
        assert conflict.status_code == 409
        assert conflict.retryable is False
        assert [r["identity_id"] for r in conflict.records] == ["u1"]

    async def test_ambiguous_legacy_memberships_conflict_before_any_write(self, store, reconciler):
        store.add_credential("u1", "dup@org.com")
        store.add_membership("dup@org.com", display_name="Pat A")
        store.add_membership("DUP@org.com", display_name="Pat B")

        with pytest.raises(ReconciliationConflict) as excinfo:
            await reconciler.reconcile_identity("u1")

        assert store.writes == 0
        assert len(excinfo.value.records) == 2

    async def test_conflict_message_is_safe_for_users(self, store, reconciler):
        store.add_credential("u1", "dup@org.com")
        store.add_credential("u2", "Dup@org.com")
        store.add_membership("dup@org.com", identity_id="u1")

        with pytest.raises(ReconciliationConflict) as excinfo:
            await reconciler.reconcile_identity("u2")
        assert "contact support" in excinfo.value.public_message


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestConcurrency:
    @pytest.mark.parametrize("writers", [2, 10])
    async def test_concurrent_reconciles_leave_one_membership(self, store, reconciler, writers):
        store.add_credential("u1", "pat@org.com")

        results = await asyncio.gather(
            *(reconciler.reconcile_identity("u1") for _ in range(writers))
        )

        assert len(store.memberships_for("u1")) == 1
        assert len(store.memberships) == 1
        assert len(store.profiles) == 1
        created = [r for r in results if Outcome.MEMBERSHIP_CREATED in r.outcomes]
        assert len(created) == 1
        assert {r.membership_id for r in results} == {str(store.memberships_for("u1")[0].id)}

    async def test_concurrent_adoption_adopts_once(self, store, reconciler):
        store.add_credential("u1", "pat@org.com")
        legacy = store.add_membership("pat@org.com")

        results = await asyncio.gather(*(reconciler.reconcile_identity("u1") for _ in range(5)))

        assert len(store.memberships) == 1
        assert store.memberships[legacy.id].identity_id == "u1"
        adopted = [r for r in results if Outcome.MEMBERSHIP_ADOPTED in r.outcomes]
        assert len(adopted) == 1

    async def test_separate_reconcilers_also_converge(self, store):
        store.add_credential("u1", "pat@org.com")
        workers = [Reconciler(store) for _ in range(4)]

        await asyncio.gather(*(w.reconcile_identity("u1") for w in workers))

        assert len(store.memberships_for("u1")) == 1

    async def test_tracker_reports_in_flight_reconcile(self, store):
        tracker = ReconcileTracker()
        reconciler = Reconciler(store, tracker=tracker)
        store.add_credential("u1", "pat@org.com")
        store.stalls["get_profile"] = 0.05

        task = asyncio.create_task(reconciler.reconcile_identity("u1"))
        await asyncio.sleep(0.01)
        assert tracker.in_flight("u1")
        assert await tracker.wait_idle("u1", timeout=1.0)
        await task
        assert not tracker.in_flight("u1")

    async def test_wait_idle_times_out(self, store):
        tracker = ReconcileTracker()
        reconciler = Reconciler(store, tracker=tracker)
        store.add_credential("u1", "pat@org.com")
        store.stalls["get_profile"] = 0.3

        task = asyncio.create_task(reconciler.reconcile_identity("u1"))
        await asyncio.sleep(0.01)
        assert await tracker.wait_idle("u1", timeout=0.01) is False
        await task


# ---------------------------------------------------------------------------
# Dry runs, purge, failures
# ---------------------------------------------------------------------------

class TestDryRun:
    async def test_dry_run_predicts_without_writing(self, store, reconciler):
        store.add_credential("u1", "pat@org.com")
        store.add_membership("pat@org.com")

        predicted = await reconciler.reconcile_identity("u1", dry_run=True)

        assert predicted.dry_run
        assert predicted.outcomes == {Outcome.PROFILE_CREATED, Outcome.MEMBERSHIP_ADOPTED}
        assert store.writes == 0

        applied = await reconciler.reconcile_identity("u1")
        assert applied.outcomes == predicted.outcomes

    async def test_dry_run_still_reports_conflicts(self, store, reconciler):
        store.add_credential("u1", "dup@org.com")
        store.add_credential("u2", "DUP@org.com")
        store.add_membership("dup@org.com", identity_id="u2")

        with pytest.raises(ReconciliationConflict):
            await reconciler.reconcile_identity("u1", dry_run=True)


class TestPurge:
    async def test_purge_removes_profile_and_membership(self, store, reconciler):
        store.add_credential("u1", "pat@org.com")
        await reconciler.reconcile_identity("u1")

        purged = await reconciler.purge("u1")

        assert purged == {"profile": True, "membership": True}
        assert store.profiles == {}
        assert store.memberships == {}
        assert await reconciler.purge("u1") == {"profile": False, "membership": False}


class TestFailures:
    async def test_store_outage_propagates(self, store, reconciler):
        store.add_credential("u1", "pat@org.com")
        store.failing.add("find_memberships_by_email")

        with pytest.raises(StoreUnavailable):
            await reconciler.reconcile_identity("u1")
        assert store.writes == 0

    async def test_deadline_bounds_store_calls(self, store, reconciler):
        store.add_credential("u1", "pat@org.com")
        store.stalls["get_profile"] = 1.0

        with pytest.raises(StoreTimeout) as excinfo:
            await reconciler.reconcile_identity("u1", timeout=0.05)
        assert excinfo.value.retryable
        assert excinfo.value.details["operation"] == "get_profile"

    async def test_changed_reconcile_drops_cached_role(self, store):
        cache = MemoryRoleCache()
        await cache.set("u1", EffectiveRole(RoleKind.MEMBER, RoleSource.DEFAULT), 60)
        reconciler = Reconciler(store, role_cache=cache)
        store.add_credential("u1", "pat@org.com")

        await reconciler.reconcile_identity("u1")

        assert await cache.get("u1") is None
