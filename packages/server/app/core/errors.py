"""
Identity error taxonomy and the JSON error envelope.

Every failure the core can report maps to exactly one error kind. Client errors
(InvalidEmail, NotFound) are surfaced as-is. ReconciliationConflict is never
retried: it carries the conflicting records so support or a repair run can
resolve it. Transient kinds (ResolutionUnavailable, StoreTimeout,
StoreUnavailable) are retryable and always fail closed.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from flock_shared.schemas.common import ErrorCode

log = structlog.get_logger()

TRY_AGAIN_MESSAGE = "The service is temporarily unavailable. Please try again."
CONTACT_SUPPORT_MESSAGE = (
    "Your account records need attention before you can continue. Please contact support."
)


class IdentityError(Exception):
    """Base class for all identity reconciliation and authorization errors."""

    code: ErrorCode
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def public_message(self) -> str:
        """Message safe to show interactive callers."""
        return self.message

    def to_dict(self, request_id: Optional[str] = None) -> dict:
        body: dict[str, Any] = {
            "code": self.code.value,
            "message": self.public_message,
            "status": self.status_code,
            "retryable": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        if request_id:
            body["request_id"] = request_id
        return {"error": body}


class InvalidEmail(IdentityError):
    code = ErrorCode.INVALID_EMAIL
    status_code = 422

    def __init__(self, raw_email: Optional[str]):
        super().__init__(
            "Email address is empty or malformed",
            details={"email": raw_email},
        )


class InvalidAllowlist(IdentityError):
    """The allowlist file could not be read or parsed; the last good set stays active."""

    code = ErrorCode.INVALID_ALLOWLIST
    status_code = 422

    def __init__(self, path: str, cause: str):
        super().__init__(
            f"Allowlist file {path} is unreadable: {cause}",
            details={"path": path, "cause": cause},
        )


class NotFound(IdentityError):
    code = ErrorCode.NOT_FOUND
    status_code = 404

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            f"{resource} not found: {identifier}",
            details={"resource": resource, "id": identifier},
        )


class ReconciliationConflict(IdentityError):
    code = ErrorCode.RECONCILIATION_CONFLICT
    status_code = 409

    def __init__(
        self,
        identity_id: str,
        email: str,
        reason: str,
        records: Optional[list[dict[str, Any]]] = None,
    ):
        super().__init__(
            f"Cannot reconcile {identity_id}: {reason}",
            details={
                "identity_id": identity_id,
                "email": email,
                "reason": reason,
                "records": records or [],
            },
        )
        self.identity_id = identity_id
        self.email = email
        self.reason = reason
        self.records = records or []

    @property
    def public_message(self) -> str:
        return CONTACT_SUPPORT_MESSAGE


class TransientIdentityError(IdentityError):
    """Failures that a caller may retry with backoff."""

    retryable = True

    @property
    def public_message(self) -> str:
        return TRY_AGAIN_MESSAGE


class ResolutionUnavailable(TransientIdentityError):
    code = ErrorCode.RESOLUTION_UNAVAILABLE
    status_code = 503

    def __init__(self, identity_id: str, cause: Optional[str] = None):
        super().__init__(
            f"Role for {identity_id} cannot be resolved right now",
            details={"identity_id": identity_id, "cause": cause},
        )


class StoreUnavailable(TransientIdentityError):
    code = ErrorCode.STORE_UNAVAILABLE
    status_code = 503

    def __init__(self, operation: str, cause: Optional[str] = None):
        super().__init__(
            f"Identity store unavailable during {operation}",
            details={"operation": operation, "cause": cause},
        )
        self.operation = operation


class StoreTimeout(TransientIdentityError):
    code = ErrorCode.STORE_TIMEOUT
    status_code = 504

    def __init__(self, operation: str):
        super().__init__(
            f"Identity store call timed out: {operation}",
            details={"operation": operation},
        )
        self.operation = operation


# ---------------------------------------------------------------------------
# FastAPI integration
# ---------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:
    """Render IdentityError subclasses as the standard error envelope."""

    @app.exception_handler(IdentityError)
    async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", None)
        if exc.retryable:
            log.warning("identity.transient_failure", code=exc.code.value, detail=exc.message)
        elif isinstance(exc, ReconciliationConflict):
            log.error("identity.conflict_surfaced", **exc.details)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id),
        )
