"""Credential model (written by the authentication subsystem, read-only here)."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from .base import timestamp_field


class Credential(SQLModel, table=True):
    __tablename__ = "credentials"

    id: str = Field(primary_key=True, nullable=False)
    email: str = Field(unique=True, index=True, nullable=False)
    email_verified: bool = Field(default=False, nullable=False)
    full_name: Optional[str] = None  # signup metadata, may be blank
    created_at: datetime = timestamp_field()
