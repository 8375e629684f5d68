"""
API v1 Router

Identity endpoints are prefixed with /identity, operator endpoints with /admin.
"""

from fastapi import APIRouter
from . import admin, hooks, identity

router = APIRouter()

router.include_router(identity.router, prefix="/identity", tags=["Identity"])
router.include_router(admin.router, prefix="/admin", tags=["Admin"])
router.include_router(hooks.router, prefix="/hooks", tags=["Hooks"])


@router.get("/", tags=["API"])
async def api_root():
    """API root - returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/identity/{identityId}",
            "/identity/{identityId}/reconcile",
            "/identity/{identityId}/role",
            "/identity/{identityId}/grants",
            "/admin/repair",
            "/admin/allowlist",
            "/hooks/identity-events",
        ],
    }
