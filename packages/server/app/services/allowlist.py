"""
Administrator allowlist source.

The allowlist is the union of emails configured in settings and the entries of
an optional YAML file. The file may be either a bare list of emails or a
mapping with an ``administrators`` key:

    administrators:
      - pastor@example.org
      - office@example.org

It is loaded at startup and can be reloaded without a redeploy, either
explicitly (``refresh``) or lazily when the file changes (``maybe_refresh``).
"""

from __future__ import annotations

import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

import structlog
import yaml

from app.core.errors import InvalidAllowlist, InvalidEmail
from app.services.normalizer import normalize_email

log = structlog.get_logger()


class AdminAllowlist:
    def __init__(
        self,
        emails: Iterable[str] = (),
        path: Optional[str | Path] = None,
        *,
        refresh_seconds: int = 60,
    ):
        self._static = tuple(emails)
        self.path = Path(path) if path else None
        self.refresh_seconds = refresh_seconds
        self._emails: frozenset[str] = frozenset()
        self._mtime: Optional[float] = None
        self._checked_at = 0.0
        self.loaded_at: Optional[datetime] = None

    def __contains__(self, email: object) -> bool:
        if not isinstance(email, str):
            return False
        return email.strip().lower() in self._emails

    def __len__(self) -> int:
        return len(self._emails)

    def load(self) -> int:
        """(Re)build the allowlist from settings and the file. Returns its size."""
        entries = list(self._static)
        mtime = None
        if self.path is not None:
            mtime = self._file_mtime()
            if mtime is None:
                log.warning("allowlist.file_missing", path=str(self.path))
            else:
                entries.extend(self._read_file())

        emails = set()
        for raw in entries:
            try:
                emails.add(normalize_email(raw))
            except InvalidEmail:
                log.warning("allowlist.invalid_entry", entry=raw)

        self._emails = frozenset(emails)
        self._mtime = mtime
        self._checked_at = time.monotonic()
        self.loaded_at = datetime.now(timezone.utc)
        log.info("allowlist.loaded", size=len(self._emails), path=str(self.path) if self.path else None)
        return len(self._emails)

    def refresh(self) -> bool:
        """Reload now. Returns True if the set of emails changed.

        Raises InvalidAllowlist if the file is unreadable; the previous set is kept.
        """
        before = self._emails
        try:
            self.load()
        except InvalidAllowlist as exc:
            # Do not retry the same broken file until it changes again
            self._mtime = self._file_mtime()
            self._checked_at = time.monotonic()
            log.error("allowlist.reload_failed", size=len(self._emails), **exc.details)
            raise
        return before != self._emails

    def maybe_refresh(self) -> bool:
        """Reload if the refresh interval elapsed and the file changed on disk."""
        if self.path is None:
            return False
        now = time.monotonic()
        if now - self._checked_at < self.refresh_seconds:
            return False
        self._checked_at = now
        if self._file_mtime() == self._mtime:
            return False
        try:
            return self.refresh()
        except InvalidAllowlist:
            return False

    def _file_mtime(self) -> Optional[float]:
        try:
            return os.stat(self.path).st_mtime
        except FileNotFoundError:
            return None

    def _read_file(self) -> list[str]:
        try:
            with open(self.path) as f:
                raw = yaml.safe_load(f) or []
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise InvalidAllowlist(str(self.path), type(exc).__name__) from exc
        if isinstance(raw, dict):
            raw = raw.get("administrators") or []
        if not isinstance(raw, list):
            raise InvalidAllowlist(str(self.path), "expected a list of emails")
        return [str(item) for item in raw]
