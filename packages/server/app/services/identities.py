"""
Identity lifecycle: reacts to events raised by the authentication subsystem and
assembles read-only snapshots of an identity's records.
"""

from __future__ import annotations

from typing import Optional

import structlog

from flock_shared.schemas.identity import IdentityEvent, IdentityEventType

from app.core.errors import NotFound
from app.services.reconciler import ReconcileResult, Reconciler
from app.services.roles import RoleResolver
from app.services.store import Deadline, IdentityStore, bounded

log = structlog.get_logger()

DELETION_REVOKER = "system:identity-deleted"


class IdentityLifecycle:
    def __init__(
        self,
        store: IdentityStore,
        reconciler: Reconciler,
        resolver: RoleResolver,
        *,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self.resolver = resolver
        self.timeout = timeout

    async def handle_event(self, event: IdentityEvent) -> dict:
        """Apply a created/deleted event. Safe to replay."""
        log.info("identity.event_received", type=event.type.value, identity_id=event.identity_id)
        if event.type == IdentityEventType.CREATED:
            result = await self.on_created(event.identity_id)
            return {"type": event.type, "identity_id": event.identity_id, "reconcile": result.to_dict()}

        purged = await self.on_deleted(event.identity_id)
        return {"type": event.type, "identity_id": event.identity_id, "purged": purged}

    async def on_created(self, identity_id: str) -> ReconcileResult:
        return await self.reconciler.reconcile_identity(identity_id, timeout=self.timeout)

    async def on_deleted(self, identity_id: str) -> dict:
        """Drop derived records and revoke grants of a credential that no longer exists."""
        deadline = Deadline(self.timeout)
        credential = await bounded(
            self.store.get_credential(identity_id), deadline, operation="get_credential"
        )
        if credential is not None:
            # Out-of-order delivery: the credential is still live, keep its records
            log.warning("identity.delete_ignored", identity_id=identity_id)
            return {"profile": False, "membership": False, "grants_revoked": 0}

        purged = await self.reconciler.purge(identity_id, timeout=deadline.remaining())
        revoked = await self.resolver.revoke_all(
            identity_id, DELETION_REVOKER, timeout=deadline.remaining()
        )
        await self.resolver.invalidate(identity_id)
        return {**purged, "grants_revoked": revoked}

    async def snapshot(self, identity_id: str) -> dict:
        deadline = Deadline(self.timeout)
        credential = await bounded(
            self.store.get_credential(identity_id), deadline, operation="get_credential"
        )
        if credential is None:
            raise NotFound("credential", identity_id)
        profile = await bounded(
            self.store.get_profile(identity_id), deadline, operation="get_profile"
        )
        membership = await bounded(
            self.store.get_membership_by_identity(identity_id),
            deadline,
            operation="get_membership_by_identity",
        )
        grants = await bounded(
            self.store.list_role_grants(identity_id), deadline, operation="list_role_grants"
        )
        return {
            "credential": credential,
            "profile": profile,
            "membership": membership,
            "grants": grants,
        }
