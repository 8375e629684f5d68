"""
Identity store adapter interface.

The reconciler and role resolver talk to persistence only through
IdentityStore. Implementations must provide the conditional primitives
(insert-if-absent, update-if-matching) that keep concurrent reconciliations
of the same identity converging on one Membership row.
"""

from __future__ import annotations

import abc
import asyncio
import inspect
import time
import uuid
from contextlib import AbstractAsyncContextManager
from typing import Awaitable, Optional, TypeVar

from app.core.errors import StoreTimeout
from app.models.credential import Credential
from app.models.membership import Membership
from app.models.profile import Profile
from app.models.role_grant import RoleGrant

T = TypeVar("T")


class Deadline:
    """Absolute deadline on the monotonic clock; None means unbounded."""

    def __init__(self, seconds: Optional[float] = None):
        self.seconds = seconds
        self._expires_at = None if seconds is None else time.monotonic() + seconds

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return self._expires_at - time.monotonic()

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0


async def bounded(awaitable: Awaitable[T], deadline: Optional[Deadline], *, operation: str) -> T:
    """Await a store call within the caller's deadline.

    Raises StoreTimeout when the deadline has already passed or expires while
    the call is in flight (the call is cancelled).
    """
    remaining = deadline.remaining() if deadline else None
    if remaining is not None and remaining <= 0:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise StoreTimeout(operation)
    try:
        return await asyncio.wait_for(awaitable, timeout=remaining)
    except asyncio.TimeoutError:
        raise StoreTimeout(operation) from None


class IdentityStore(abc.ABC):
    """Typed persistence operations over Credential, Profile, Membership, RoleGrant."""

    # --- Credentials (read-only) ---

    @abc.abstractmethod
    async def get_credential(self, identity_id: str) -> Optional[Credential]: ...

    @abc.abstractmethod
    async def get_credential_by_email(self, email: str) -> list[Credential]:
        """Credentials whose email matches case-insensitively."""

    @abc.abstractmethod
    async def list_credentials(self, *, after: Optional[str], limit: int) -> list[Credential]:
        """Keyset page of credentials ordered by id, strictly after `after`."""

    # --- Profiles ---

    @abc.abstractmethod
    async def get_profile(self, identity_id: str) -> Optional[Profile]: ...

    @abc.abstractmethod
    async def insert_profile_if_absent(self, profile: Profile) -> bool:
        """Insert unless a profile with the same id exists. True if inserted."""

    @abc.abstractmethod
    async def update_profile_email(self, identity_id: str, *, expected: str, email: str) -> bool:
        """Set the profile email only if it still equals `expected`."""

    @abc.abstractmethod
    async def delete_profile(self, identity_id: str) -> bool: ...

    # --- Memberships ---

    @abc.abstractmethod
    async def get_membership_by_identity(self, identity_id: str) -> Optional[Membership]: ...

    @abc.abstractmethod
    async def find_memberships_by_email(self, email: str) -> list[Membership]:
        """Memberships whose email matches case-insensitively, linked or not."""

    @abc.abstractmethod
    async def insert_membership_if_absent(self, membership: Membership) -> bool:
        """Insert unless a membership for the same identity id exists."""

    @abc.abstractmethod
    async def adopt_membership(
        self,
        membership_id: uuid.UUID,
        *,
        expected_identity_id: Optional[str],
        identity_id: str,
        email: str,
    ) -> bool:
        """Link a legacy membership to `identity_id` if its identity id is still `expected_identity_id`."""

    @abc.abstractmethod
    async def update_membership_email(
        self, membership_id: uuid.UUID, *, expected: str, email: str
    ) -> bool: ...

    @abc.abstractmethod
    async def delete_membership(self, identity_id: str) -> bool: ...

    # --- Role grants ---

    @abc.abstractmethod
    async def list_role_grants(self, identity_id: str) -> list[RoleGrant]: ...

    @abc.abstractmethod
    async def add_role_grant(self, grant: RoleGrant) -> RoleGrant: ...

    @abc.abstractmethod
    async def revoke_role_grant(
        self, grant_id: uuid.UUID, *, revoked_by: str
    ) -> Optional[RoleGrant]:
        """Mark a grant revoked if it is not already. Returns the updated grant or None."""

    # --- Scope & health ---

    @abc.abstractmethod
    def unit_of_work(self) -> AbstractAsyncContextManager[None]:
        """Atomic scope: writes inside commit together or not at all."""

    @abc.abstractmethod
    async def ping(self) -> None:
        """Raise StoreUnavailable when the backing store cannot be reached."""
