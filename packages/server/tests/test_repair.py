"""
Repair/audit runner tests.
"""

from __future__ import annotations

import pytest

from app.core.errors import NotFound, StoreUnavailable
from app.services.allowlist import AdminAllowlist
from app.services.reconciler import Reconciler
from app.services.repair import RepairRunner
from app.services.roles import RoleResolver
from flock_shared.schemas.common import ReconcileOutcome

from fakes import InMemoryIdentityStore


@pytest.fixture
def store() -> InMemoryIdentityStore:
    s = InMemoryIdentityStore()
    for i in range(7):
        s.add_credential(f"u{i}", f"user{i}@org.com")
    return s


def _runner(store, **kwargs) -> RepairRunner:
    allowlist = AdminAllowlist(["user6@org.com"])
    allowlist.load()
    reconciler = Reconciler(store)
    resolver = RoleResolver(store, allowlist)
    return RepairRunner(store, reconciler, resolver, **kwargs)


async def test_full_run_reconciles_every_identity(store):
    report = await _runner(store, batch_size=3, concurrency=2).run()

    assert report.scanned == 7
    assert report.outcomes[ReconcileOutcome.PROFILE_CREATED.value] == 7
    assert report.outcomes[ReconcileOutcome.MEMBERSHIP_CREATED.value] == 7
    assert report.created == 14
    assert report.roles == {"member": 6, "admin": 1}
    assert report.conflicts == [] and report.failures == []
    assert report.finished_at is not None
    assert len(store.memberships) == 7


async def test_second_run_changes_nothing(store):
    runner = _runner(store, batch_size=2, concurrency=3)
    await runner.run()
    writes = store.writes

    report = await runner.run()

    assert report.unchanged == 7
    assert report.created == 0
    assert store.writes == writes


async def test_dry_run_reports_without_writing(store):
    store.add_membership("user1@org.com", category="Administrator")

    report = await _runner(store).run(fix=False)

    assert report.fix is False
    assert report.adopted == 1
    assert store.writes == 0
    assert store.memberships_for("u1") == []


async def test_conflicts_are_recorded_and_scan_continues(store):
    store.add_credential("u9", "USER3@org.com")
    store.add_membership("user3@org.com", identity_id="u3")

    report = await _runner(store).run()

    assert report.scanned == 8
    assert [c.identity_id for c in report.conflicts] == ["u9"]
    assert report.conflicts[0].code == "RECONCILIATION_CONFLICT"
    assert "u9" not in store.profiles
    assert store.memberships_for("u9") == []


async def test_adopts_legacy_memberships(store):
    legacy = store.add_membership("User2@org.com", category="Pastor")

    report = await _runner(store).run()

    assert report.adopted == 1
    assert store.memberships[legacy.id].identity_id == "u2"
    assert report.roles["admin"] == 2


async def test_single_identity_scope(store):
    report = await _runner(store).run("u4")
    assert report.scanned == 1
    assert report.scope == "u4"
    assert list(store.profiles) == ["u4"]


async def test_single_identity_scope_unknown(store):
    with pytest.raises(NotFound):
        await _runner(store).run("nobody")


async def test_per_identity_failures_are_recorded(store):
    store.failing.add("get_membership_by_identity")

    report = await _runner(store).run()

    assert report.scanned == 7
    assert len(report.failures) == 7
    assert report.failures[0].code == "STORE_UNAVAILABLE"


async def test_listing_failure_aborts_run(store):
    store.failing.add("list_credentials")
    with pytest.raises(StoreUnavailable):
        await _runner(store).run()


def test_rejects_non_positive_settings(store):
    with pytest.raises(ValueError):
        _runner(store, concurrency=0)
    with pytest.raises(ValueError):
        _runner(store, batch_size=0)


async def test_report_serializes(store):
    report = await _runner(store).run()
    data = report.to_dict()
    assert data["scanned"] == 7
    assert data["scope"] == "all"
    assert data["outcomes"]["ProfileCreated"] == 7
    assert report.summary()["conflicts"] == 0
