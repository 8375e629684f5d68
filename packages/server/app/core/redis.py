"""Redis connection management for the shared role cache."""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis

from app.core.config import get_settings

_redis_pool: redis.Redis | None = None


def get_redis(url: Optional[str] = None) -> redis.Redis:
    """Get or create the Redis connection. The pool connects lazily."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = redis.from_url(
            url or get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None
