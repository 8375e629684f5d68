"""
Authentication subsystem event hook.

POST   /api/v1/hooks/identity-events     - identity.created / identity.deleted
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from app.core.auth import ServiceCaller, require_events
from app.core.retry import retry_transient
from app.core.services import IdentityServices, get_services
from flock_shared.schemas.identity import IdentityEvent, IdentityEventResponse

router = APIRouter()


@router.post("/identity-events", response_model=IdentityEventResponse, tags=["Hooks"])
async def receive_identity_event(
    event: IdentityEvent,
    caller: ServiceCaller = Depends(require_events),
    services: IdentityServices = Depends(get_services),
):
    """Apply an identity lifecycle event. Replays are harmless."""
    settings = services.settings
    outcome = await retry_transient(
        lambda: services.lifecycle.handle_event(event),
        attempts=settings.retry_attempts,
        base_delay=settings.retry_base_seconds,
        operation=event.type.value,
    )
    return IdentityEventResponse(**outcome)
