from enum import Enum
from typing import Optional
from pydantic import BaseModel

class MembershipCategory(str, Enum):
    MEMBER = "Member"
    LEADER = "Leader"
    ADMINISTRATOR = "Administrator"

class GrantRole(str, Enum):
    ADMIN = "Admin"
    SUPER_ADMIN = "SuperAdmin"

class RoleKind(str, Enum):
    NONE = "none"
    MEMBER = "member"
    ADMIN = "admin"
    SUPER_ADMIN = "super-admin"

class RoleSource(str, Enum):
    GRANT = "grant"
    ALLOWLIST = "allowlist"
    MEMBERSHIP_CATEGORY = "membership-category"
    DEFAULT = "default"

class TrustLevel(str, Enum):
    AUTHORITATIVE = "authoritative"
    CONFIGURED = "configured"
    ADVISORY = "advisory"
    DEFAULT = "default"

# Trust attached to each signal source
SOURCE_TRUST: dict["RoleSource", "TrustLevel"] = {
    RoleSource.GRANT: TrustLevel.AUTHORITATIVE,
    RoleSource.ALLOWLIST: TrustLevel.CONFIGURED,
    RoleSource.MEMBERSHIP_CATEGORY: TrustLevel.ADVISORY,
    RoleSource.DEFAULT: TrustLevel.DEFAULT,
}

class ReconcileOutcome(str, Enum):
    PROFILE_CREATED = "ProfileCreated"
    PROFILE_CORRECTED = "ProfileCorrected"
    MEMBERSHIP_CREATED = "MembershipCreated"
    MEMBERSHIP_ADOPTED = "MembershipAdopted"
    MEMBERSHIP_CORRECTED = "MembershipCorrected"
    NO_CHANGE = "NoChange"

class ErrorCode(str, Enum):
    INVALID_EMAIL = "INVALID_EMAIL"
    NOT_FOUND = "NOT_FOUND"
    RECONCILIATION_CONFLICT = "RECONCILIATION_CONFLICT"
    RESOLUTION_UNAVAILABLE = "RESOLUTION_UNAVAILABLE"
    STORE_TIMEOUT = "STORE_TIMEOUT"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    INVALID_ALLOWLIST = "INVALID_ALLOWLIST"

class ErrorBody(BaseModel):
    code: ErrorCode
    message: str
    status: int
    retryable: bool = False
    details: Optional[dict] = None
    request_id: Optional[str] = None

class ErrorResponse(BaseModel):
    error: ErrorBody
