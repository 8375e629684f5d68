"""Role grant model (append-only audit of explicit authorization)."""

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, timestamp_field, utcnow


class RoleGrant(UUIDMixin, SQLModel, table=True):
    __tablename__ = "role_grants"

    # No foreign key: grants outlive the credential as an audit trail
    identity_id: str = Field(nullable=False, index=True)
    role: str = Field(nullable=False)  # Admin | SuperAdmin
    granted_at: datetime = timestamp_field()
    granted_by: str = Field(nullable=False)
    expires_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    revoked: bool = Field(default=False, nullable=False)
    revoked_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    revoked_by: Optional[str] = None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.revoked:
            return False
        if self.expires_at is None:
            return True
        now = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            # SQLite hands back naive timestamps
            now = now.replace(tzinfo=None)
        return expires_at > now
