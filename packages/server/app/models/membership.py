"""Membership model (1:1 with Credential once reconciled)."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from flock_shared.schemas.common import MembershipCategory

from .base import UUIDMixin, timestamp_field


class Membership(UUIDMixin, SQLModel, table=True):
    __tablename__ = "memberships"

    # Nullable only for legacy rows that were keyed by email
    identity_id: Optional[str] = Field(
        default=None, foreign_key="credentials.id", ondelete="CASCADE", unique=True, index=True
    )
    email: str = Field(nullable=False, index=True)
    display_name: str = Field(nullable=False)
    category: str = Field(nullable=False, default=MembershipCategory.MEMBER.value)
    active: bool = Field(default=True, nullable=False)
    joined_at: datetime = timestamp_field()
