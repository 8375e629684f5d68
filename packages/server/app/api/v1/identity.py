"""
Identity API endpoints.

POST   /api/v1/identity/{identityId}/reconcile            - Reconcile profile and membership
GET    /api/v1/identity/{identityId}/role                 - Effective role
GET    /api/v1/identity/{identityId}                      - Records snapshot
GET    /api/v1/identity/{identityId}/grants               - Grant history
POST   /api/v1/identity/{identityId}/grants               - Append a grant (Admin)
DELETE /api/v1/identity/{identityId}/grants/{grantId}     - Revoke a grant (Admin)
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.core.auth import ServiceCaller, require_admin, require_read, require_write
from app.core.retry import retry_transient
from app.core.services import IdentityServices, get_services
from app.models.role_grant import RoleGrant
from app.services.normalizer import parse_category
from app.services.roles import compare_hint
from flock_shared.schemas.identity import (
    CredentialResponse,
    EffectiveRoleResponse,
    IdentitySnapshotResponse,
    MembershipResponse,
    ProfileResponse,
    ReconcileRequest,
    ReconcileResponse,
    RoleGrantListResponse,
    RoleGrantRequest,
    RoleGrantResponse,
    RoleRevokeRequest,
)

router = APIRouter()


def _grant_response(grant: RoleGrant) -> RoleGrantResponse:
    return RoleGrantResponse(
        id=str(grant.id),
        identity_id=grant.identity_id,
        role=grant.role,
        granted_at=grant.granted_at,
        granted_by=grant.granted_by,
        expires_at=grant.expires_at,
        revoked=grant.revoked,
        revoked_at=grant.revoked_at,
        revoked_by=grant.revoked_by,
    )


@router.post("/{identityId}/reconcile", response_model=ReconcileResponse, tags=["Identity"])
async def reconcile_identity(
    identityId: str,
    body: Optional[ReconcileRequest] = None,
    caller: ServiceCaller = Depends(require_write),
    services: IdentityServices = Depends(get_services),
):
    """Ensure the identity has exactly one linked profile and membership."""
    dry_run = body.dry_run if body else False
    settings = services.settings
    result = await retry_transient(
        lambda: services.reconciler.reconcile_identity(identityId, dry_run=dry_run),
        attempts=settings.retry_attempts,
        base_delay=settings.retry_base_seconds,
        operation="reconcile",
    )
    return ReconcileResponse(**result.to_dict())


@router.get("/{identityId}/role", response_model=EffectiveRoleResponse, tags=["Identity"])
async def get_effective_role(
    identityId: str,
    fresh: bool = Query(False, description="Bypass the role cache"),
    hint: Optional[str] = Query(None, description="Role the client currently holds"),
    caller: ServiceCaller = Depends(require_read),
    services: IdentityServices = Depends(get_services),
):
    """Resolve the effective role. Fails closed when it cannot be decided."""
    settings = services.settings
    effective = await retry_transient(
        lambda: services.resolver.resolve_role(identityId, use_cache=not fresh),
        attempts=settings.retry_attempts,
        base_delay=settings.retry_base_seconds,
        operation="resolve_role",
    )
    overridden = compare_hint(identityId, hint, effective)
    return EffectiveRoleResponse(
        identity_id=identityId,
        role=effective.role,
        source=effective.source,
        trust=effective.trust,
        computed_at=effective.computed_at,
        pending_reconcile=effective.pending_reconcile,
        hint_overridden=overridden,
    )


@router.get("/{identityId}", response_model=IdentitySnapshotResponse, tags=["Identity"])
async def get_identity_snapshot(
    identityId: str,
    caller: ServiceCaller = Depends(require_read),
    services: IdentityServices = Depends(get_services),
):
    """Credential, profile, membership and grants as stored, for support tooling."""
    snap = await services.lifecycle.snapshot(identityId)
    credential = snap["credential"]
    profile = snap["profile"]
    membership = snap["membership"]
    return IdentitySnapshotResponse(
        credential=CredentialResponse(
            id=credential.id,
            email=credential.email,
            email_verified=credential.email_verified,
            created_at=credential.created_at,
        ),
        profile=ProfileResponse(
            id=profile.id,
            email=profile.email,
            full_name=profile.full_name,
            role=profile.role,
            updated_at=profile.updated_at,
        ) if profile else None,
        membership=MembershipResponse(
            id=str(membership.id),
            identity_id=membership.identity_id,
            email=membership.email,
            display_name=membership.display_name,
            category=parse_category(membership.category),
            active=membership.active,
            joined_at=membership.joined_at,
        ) if membership else None,
        grants=[_grant_response(g) for g in snap["grants"]],
    )


@router.get("/{identityId}/grants", response_model=RoleGrantListResponse, tags=["Grants"])
async def list_grants(
    identityId: str,
    caller: ServiceCaller = Depends(require_read),
    services: IdentityServices = Depends(get_services),
):
    """Full grant history, revoked grants included."""
    grants = await services.resolver.list_grants(identityId)
    return RoleGrantListResponse(data=[_grant_response(g) for g in grants])


@router.post("/{identityId}/grants", response_model=RoleGrantResponse, status_code=201, tags=["Grants"])
async def add_grant(
    identityId: str,
    body: RoleGrantRequest,
    caller: ServiceCaller = Depends(require_admin),
    services: IdentityServices = Depends(get_services),
):
    """Append an Admin or SuperAdmin grant (Admin only)."""
    grant = await services.resolver.grant(
        identityId, body.role, body.granted_by, expires_at=body.expires_at
    )
    return _grant_response(grant)


@router.delete("/{identityId}/grants/{grantId}", response_model=RoleGrantResponse, tags=["Grants"])
async def revoke_grant(
    identityId: str,
    grantId: str,
    body: Optional[RoleRevokeRequest] = None,
    caller: ServiceCaller = Depends(require_admin),
    services: IdentityServices = Depends(get_services),
):
    """Revoke a grant. The row is kept for audit."""
    revoked_by = body.revoked_by if body else caller.subject
    grant = await services.resolver.revoke(identityId, grantId, revoked_by)
    return _grant_response(grant)
