"""Repair/audit run schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field

ALL_IDENTITIES = "all"


class RepairRequest(BaseModel):
    """Run a repair over every identity or a single one."""
    scope: str = Field(default=ALL_IDENTITIES, min_length=1)
    fix: bool = True


class RepairIssue(BaseModel):
    identity_id: str
    code: str
    message: str
    details: Optional[dict] = None


class RepairReportResponse(BaseModel):
    scope: str
    fix: bool
    started_at: datetime
    finished_at: Optional[datetime] = None
    scanned: int
    created: int
    corrected: int
    adopted: int
    unchanged: int
    outcomes: dict[str, int]
    roles: dict[str, int]
    conflicts: List[RepairIssue]
    failures: List[RepairIssue]


class AllowlistStatusResponse(BaseModel):
    size: int
    path: Optional[str] = None
    loaded_at: Optional[datetime] = None
    changed: Optional[bool] = None
