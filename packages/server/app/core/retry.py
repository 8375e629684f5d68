"""
Caller-side retry of transient identity failures.

Interactive callers retry ResolutionUnavailable, StoreUnavailable and
StoreTimeout a few times with exponential backoff, then surface the error.
Nothing here ever substitutes a default answer.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

from app.core.errors import TransientIdentityError

log = structlog.get_logger()

T = TypeVar("T")

MAX_RETRIES = 3
RETRY_BASE_SECONDS = 0.05


async def retry_transient(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = MAX_RETRIES,
    base_delay: float = RETRY_BASE_SECONDS,
    operation: str = "identity",
) -> T:
    """Call `fn` until it succeeds or `attempts` transient failures happened."""
    attempts = max(1, attempts)
    attempt = 0
    while True:
        try:
            return await fn()
        except TransientIdentityError as exc:
            if attempt >= attempts - 1:
                log.warning(
                    "identity.retry_exhausted",
                    operation=operation,
                    attempts=attempts,
                    code=exc.code.value,
                )
                raise
            delay = base_delay * (2 ** attempt)
            log.info(
                "identity.retry",
                operation=operation,
                attempt=attempt + 1,
                delay=delay,
                code=exc.code.value,
            )
            await asyncio.sleep(delay)
            attempt += 1
