"""Identity reconciliation and role resolution schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field

from .common import GrantRole, MembershipCategory, ReconcileOutcome, RoleKind, RoleSource, TrustLevel


class IdentityEventType(str, Enum):
    CREATED = "identity.created"
    DELETED = "identity.deleted"


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class ReconcileRequest(BaseModel):
    """Optional knobs for an on-demand reconcile."""
    dry_run: bool = False


class RoleGrantRequest(BaseModel):
    """Append an explicit role grant."""
    role: GrantRole
    granted_by: str = Field(min_length=1, max_length=200)
    expires_at: Optional[datetime] = None


class RoleRevokeRequest(BaseModel):
    revoked_by: str = Field(min_length=1, max_length=200)


class IdentityEvent(BaseModel):
    """Event raised by the authentication subsystem."""
    type: IdentityEventType
    identity_id: str = Field(min_length=1)
    occurred_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class CorrectionResponse(BaseModel):
    field: str
    old: Optional[str] = None
    new: Optional[str] = None


class ReconcileResponse(BaseModel):
    identity_id: str
    outcomes: List[ReconcileOutcome]
    corrections: List[CorrectionResponse] = []
    membership_id: Optional[str] = None
    dry_run: bool = False


class EffectiveRoleResponse(BaseModel):
    identity_id: str
    role: RoleKind
    source: RoleSource
    trust: TrustLevel
    computed_at: datetime
    pending_reconcile: bool = False
    hint_overridden: bool = False  # True when a client hint disagreed with this result


class RoleGrantResponse(BaseModel):
    id: str
    identity_id: str
    role: GrantRole
    granted_at: datetime
    granted_by: str
    expires_at: Optional[datetime] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None


class RoleGrantListResponse(BaseModel):
    data: List[RoleGrantResponse]


class CredentialResponse(BaseModel):
    id: str
    email: str
    email_verified: bool
    created_at: Optional[datetime] = None


class ProfileResponse(BaseModel):
    id: str
    email: str
    full_name: str
    role: Optional[str] = None
    updated_at: Optional[datetime] = None


class MembershipResponse(BaseModel):
    id: str
    identity_id: Optional[str] = None
    email: str
    display_name: str
    category: MembershipCategory
    active: bool
    joined_at: Optional[datetime] = None


class IdentitySnapshotResponse(BaseModel):
    credential: CredentialResponse
    profile: Optional[ProfileResponse] = None
    membership: Optional[MembershipResponse] = None
    grants: List[RoleGrantResponse] = []


class IdentityEventResponse(BaseModel):
    type: IdentityEventType
    identity_id: str
    reconcile: Optional[ReconcileResponse] = None
    purged: Optional[dict] = None
