"""Profile model (1:1 with Credential, keyed by the credential id)."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from .base import timestamp_field, utcnow


class Profile(SQLModel, table=True):
    __tablename__ = "profiles"

    id: str = Field(
        foreign_key="credentials.id", ondelete="CASCADE", primary_key=True, nullable=False
    )
    email: str = Field(nullable=False, index=True)  # denormalized from Credential
    full_name: str = Field(nullable=False, default="")
    role: Optional[str] = None  # free-form hint, never used for authorization
    updated_at: datetime = timestamp_field(onupdate=utcnow)
