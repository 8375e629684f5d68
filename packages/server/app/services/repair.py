"""
Repair/audit runner.

Scans credentials in keyset-paginated batches and, for each identity,
reconciles it and resolves its role afresh. A bounded queue feeds a fixed
number of workers so the backing store never sees more than `concurrency`
identities in flight. Per-identity failures are recorded and the scan moves on.

The runner only creates, adopts and corrects records; it never deletes, so it
is safe to schedule and to run alongside live traffic.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import structlog

from flock_shared.schemas.common import ReconcileOutcome
from flock_shared.schemas.repair import ALL_IDENTITIES

from app.core.errors import IdentityError, NotFound, ReconciliationConflict
from app.models.credential import Credential
from app.services.reconciler import Reconciler
from app.services.roles import RoleResolver
from app.services.store import Deadline, IdentityStore, bounded

log = structlog.get_logger()


@dataclass
class RepairIssue:
    identity_id: str
    code: str
    message: str
    details: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "identity_id": self.identity_id,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class RepairReport:
    scope: str
    fix: bool
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    scanned: int = 0
    outcomes: Counter = field(default_factory=Counter)
    roles: Counter = field(default_factory=Counter)
    conflicts: list[RepairIssue] = field(default_factory=list)
    failures: list[RepairIssue] = field(default_factory=list)

    @property
    def created(self) -> int:
        return (
            self.outcomes[ReconcileOutcome.PROFILE_CREATED.value]
            + self.outcomes[ReconcileOutcome.MEMBERSHIP_CREATED.value]
        )

    @property
    def corrected(self) -> int:
        return (
            self.outcomes[ReconcileOutcome.PROFILE_CORRECTED.value]
            + self.outcomes[ReconcileOutcome.MEMBERSHIP_CORRECTED.value]
        )

    @property
    def adopted(self) -> int:
        return self.outcomes[ReconcileOutcome.MEMBERSHIP_ADOPTED.value]

    @property
    def unchanged(self) -> int:
        return self.outcomes[ReconcileOutcome.NO_CHANGE.value]

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "fix": self.fix,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "scanned": self.scanned,
            "created": self.created,
            "corrected": self.corrected,
            "adopted": self.adopted,
            "unchanged": self.unchanged,
            "outcomes": dict(self.outcomes),
            "roles": dict(self.roles),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "failures": [f.to_dict() for f in self.failures],
        }

    def summary(self) -> dict:
        """Flat counts for operational logging."""
        return {
            "scope": self.scope,
            "fix": self.fix,
            "scanned": self.scanned,
            "created": self.created,
            "corrected": self.corrected,
            "adopted": self.adopted,
            "conflicts": len(self.conflicts),
            "failures": len(self.failures),
            "roles": dict(self.roles),
        }


class RepairRunner:
    def __init__(
        self,
        store: IdentityStore,
        reconciler: Reconciler,
        resolver: RoleResolver,
        *,
        batch_size: int = 100,
        concurrency: int = 4,
        timeout: Optional[float] = None,
    ):
        if batch_size < 1 or concurrency < 1:
            raise ValueError("batch_size and concurrency must be positive")
        self.store = store
        self.reconciler = reconciler
        self.resolver = resolver
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.timeout = timeout

    async def run(self, scope: str = ALL_IDENTITIES, *, fix: bool = True) -> RepairReport:
        report = RepairReport(scope=scope, fix=fix)
        log.info("repair.started", scope=scope, fix=fix, concurrency=self.concurrency)

        if scope == ALL_IDENTITIES:
            await self._run_all(report)
        else:
            credential = await bounded(
                self.store.get_credential(scope), Deadline(self.timeout), operation="get_credential"
            )
            if credential is None:
                raise NotFound("credential", scope)
            await self._repair_one(credential, report)

        report.finished_at = datetime.now(timezone.utc)
        log.info("repair.completed", **report.summary())
        return report

    async def _run_all(self, report: RepairReport) -> None:
        queue: asyncio.Queue[Optional[Credential]] = asyncio.Queue(maxsize=self.concurrency * 2)

        async def worker() -> None:
            while True:
                credential = await queue.get()
                try:
                    if credential is None:
                        return
                    await self._repair_one(credential, report)
                finally:
                    queue.task_done()

        async def produce() -> None:
            async for batch in self._batches():
                for credential in batch:
                    await queue.put(credential)
            for _ in range(self.concurrency):
                await queue.put(None)

        tasks = [asyncio.create_task(produce())]
        tasks += [asyncio.create_task(worker()) for _ in range(self.concurrency)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            # A failed listing or worker stops the whole run
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _batches(self):
        after: Optional[str] = None
        while True:
            batch = await bounded(
                self.store.list_credentials(after=after, limit=self.batch_size),
                Deadline(self.timeout),
                operation="list_credentials",
            )
            if not batch:
                return
            yield batch
            if len(batch) < self.batch_size:
                return
            after = batch[-1].id

    async def _repair_one(self, credential: Credential, report: RepairReport) -> None:
        report.scanned += 1
        try:
            result = await self.reconciler.reconcile(
                credential, timeout=self.timeout, dry_run=not report.fix
            )
        except ReconciliationConflict as exc:
            report.conflicts.append(
                RepairIssue(credential.id, exc.code.value, exc.message, exc.details)
            )
            return
        except IdentityError as exc:
            report.failures.append(
                RepairIssue(credential.id, exc.code.value, exc.message, exc.details)
            )
            return
        for outcome in result.outcomes:
            report.outcomes[outcome.value] += 1

        try:
            effective = await self.resolver.resolve_role(
                credential.id, timeout=self.timeout, use_cache=False
            )
        except IdentityError as exc:
            report.failures.append(
                RepairIssue(credential.id, exc.code.value, exc.message, exc.details)
            )
            return
        report.roles[effective.role.value] += 1
