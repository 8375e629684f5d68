"""
Input canonicalization applied before any comparison or write.

Rules:
- Emails are trimmed and lower-cased; the result must be non-empty and contain "@".
- Names are trimmed; a blank name falls back to the email local part, i.e. the
  text before the first "@" of the normalized email ("User@Example.COM " -> "user").
- Membership categories are parsed case-insensitively, singular or plural.
"""

from __future__ import annotations

from typing import Optional

from flock_shared.schemas.common import MembershipCategory

from app.core.errors import InvalidEmail

_LEADER_ALIASES = {"leader", "pastor", "minister", "elder", "deacon"}
_ADMIN_ALIASES = {"administrator", "admin", "superuser", "superadmin"}


def normalize_email(raw_email: Optional[str]) -> str:
    email = (raw_email or "").strip().lower()
    if not email or "@" not in email:
        raise InvalidEmail(raw_email)
    return email


def fallback_name(email: str) -> str:
    """Display name derived from a normalized email."""
    return email.split("@", 1)[0]


def normalize(raw_email: Optional[str], raw_name: Optional[str]) -> tuple[str, str]:
    """Return (email, name) in canonical form."""
    email = normalize_email(raw_email)
    name = (raw_name or "").strip()
    if not name:
        name = fallback_name(email)
    return email, name


def parse_category(raw: Optional[str]) -> MembershipCategory:
    """Map stored category spellings (including legacy plurals) to the canonical enum."""
    value = (raw or "").strip().lower()
    # Compound labels ("worker-leader", "church admin") are judged by their last word
    value = value.replace("_", " ").replace("-", " ").split(" ")[-1]
    if value.endswith("s") and value[:-1] in _LEADER_ALIASES | _ADMIN_ALIASES | {"member"}:
        value = value[:-1]
    if value in _ADMIN_ALIASES:
        return MembershipCategory.ADMINISTRATOR
    if value in _LEADER_ALIASES:
        return MembershipCategory.LEADER
    return MembershipCategory.MEMBER
