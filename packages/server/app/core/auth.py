"""
Service-token authentication for identity callers.

Callers (the web app, the authentication subsystem, operators' tooling) present
a bearer JWT whose ``scopes`` claim lists what they may do:

- identity:read    read effective roles, snapshots and grant history
- identity:write   trigger reconciliation
- identity:events  deliver authentication subsystem events
- identity:admin   manage grants, run repairs, reload the allowlist (implies all)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader

log = structlog.get_logger()

SCOPE_READ = "identity:read"
SCOPE_WRITE = "identity:write"
SCOPE_EVENTS = "identity:events"
SCOPE_ADMIN = "identity:admin"

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_service_token(
    subject: str,
    scopes: list[str],
    *,
    secret: str,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed service token."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "scopes": list(scopes),
        "iat": now,
        "exp": now + (expires_delta or timedelta(minutes=60)),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_service_token(token: str, *, secret: str, algorithm: str = "HS256") -> dict:
    """Decode and verify a service token. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, secret, algorithms=[algorithm])


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

class ServiceCaller:
    """The authenticated caller and what it may do."""

    def __init__(self, subject: str, scopes: set[str]):
        self.subject = subject
        self.scopes = scopes

    def has_scope(self, scope: str) -> bool:
        return SCOPE_ADMIN in self.scopes or scope in self.scopes


async def get_service_caller(
    request: Request,
    authorization: Optional[str] = Depends(api_key_header),
) -> ServiceCaller:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Authentication required")

    settings = request.app.state.settings
    token = authorization[7:].strip()
    try:
        payload = decode_service_token(
            token, secret=settings.secret_key, algorithm=settings.jwt_algorithm
        )
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    scopes = payload.get("scopes") or []
    if isinstance(scopes, str):
        scopes = scopes.split()
    caller = ServiceCaller(subject=str(payload.get("sub", "")), scopes=set(scopes))
    request.state.caller = caller
    structlog.contextvars.bind_contextvars(caller=caller.subject)
    return caller


def require_scope(scope: str):
    """Dependency factory: the caller must hold `scope` (or identity:admin)."""

    async def dependency(caller: ServiceCaller = Depends(get_service_caller)) -> ServiceCaller:
        if not caller.has_scope(scope):
            log.warning("auth.scope_denied", caller=caller.subject, scope=scope)
            raise HTTPException(status_code=403, detail=f"Scope {scope} required")
        return caller

    return dependency


require_read = require_scope(SCOPE_READ)
require_write = require_scope(SCOPE_WRITE)
require_events = require_scope(SCOPE_EVENTS)
require_admin = require_scope(SCOPE_ADMIN)
