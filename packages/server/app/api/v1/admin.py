"""
Administrative API endpoints.

POST   /api/v1/admin/repair              - Run a repair/audit pass (Admin)
GET    /api/v1/admin/allowlist           - Allowlist status (Admin)
POST   /api/v1/admin/allowlist/refresh   - Reload the allowlist (Admin)
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from app.core.auth import ServiceCaller, require_admin
from app.core.services import IdentityServices, get_services
from flock_shared.schemas.repair import (
    AllowlistStatusResponse,
    RepairReportResponse,
    RepairRequest,
)

router = APIRouter()


@router.post("/repair", response_model=RepairReportResponse, tags=["Admin"])
async def run_repair(
    body: Optional[RepairRequest] = None,
    caller: ServiceCaller = Depends(require_admin),
    services: IdentityServices = Depends(get_services),
):
    """Reconcile and re-resolve every identity (or one). `fix=false` only reports."""
    body = body or RepairRequest()
    report = await services.repair_runner().run(body.scope, fix=body.fix)
    return RepairReportResponse(**report.to_dict())


@router.get("/allowlist", response_model=AllowlistStatusResponse, tags=["Admin"])
async def allowlist_status(
    caller: ServiceCaller = Depends(require_admin),
    services: IdentityServices = Depends(get_services),
):
    allowlist = services.allowlist
    return AllowlistStatusResponse(
        size=len(allowlist),
        path=str(allowlist.path) if allowlist.path else None,
        loaded_at=allowlist.loaded_at,
    )


@router.post("/allowlist/refresh", response_model=AllowlistStatusResponse, tags=["Admin"])
async def refresh_allowlist(
    caller: ServiceCaller = Depends(require_admin),
    services: IdentityServices = Depends(get_services),
):
    """Reload the allowlist now. Cached roles are dropped when it changed."""
    allowlist = services.allowlist
    changed = allowlist.refresh()
    if changed:
        await services.role_cache.clear()
    return AllowlistStatusResponse(
        size=len(allowlist),
        path=str(allowlist.path) if allowlist.path else None,
        loaded_at=allowlist.loaded_at,
        changed=changed,
    )
