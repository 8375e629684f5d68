"""
Short-TTL read-through cache for effective roles.

The cache is owned by the role resolver and is never a source of truth: a
miss, an expired entry or a cache backend failure all fall through to a
fresh resolution.

Every invalidation bumps a per-identity generation (and ``clear`` bumps a
global epoch). The resolver reads the generation before it starts resolving
and hands it to ``set``; a result computed across an invalidation is never
served.
"""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING, Optional

import redis.asyncio as redis
import structlog

if TYPE_CHECKING:
    from app.services.roles import EffectiveRole

log = structlog.get_logger()

Generation = tuple[int, int]


class RoleCache:
    """Interface shared by the cache backends."""

    async def get(self, identity_id: str) -> Optional["EffectiveRole"]:
        return None

    async def generation(self, identity_id: str) -> Optional[Generation]:
        return None

    async def set(
        self,
        identity_id: str,
        role: "EffectiveRole",
        ttl_seconds: int,
        *,
        generation: Optional[Generation] = None,
    ) -> None:
        return None

    async def invalidate(self, identity_id: str) -> None:
        return None

    async def clear(self) -> None:
        return None


class NullRoleCache(RoleCache):
    """Caching disabled."""


class MemoryRoleCache(RoleCache):
    """Per-process cache with monotonic expiry."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[float, "EffectiveRole"]] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0

    async def get(self, identity_id: str) -> Optional["EffectiveRole"]:
        entry = self._entries.get(identity_id)
        if entry is None:
            return None
        expires_at, role = entry
        if expires_at <= time.monotonic():
            self._entries.pop(identity_id, None)
            return None
        return role

    async def generation(self, identity_id: str) -> Generation:
        return self._epoch, self._generations.get(identity_id, 0)

    async def set(
        self,
        identity_id: str,
        role: "EffectiveRole",
        ttl_seconds: int,
        *,
        generation: Optional[Generation] = None,
    ) -> None:
        if generation is not None and generation != await self.generation(identity_id):
            log.debug("role_cache.stale_write_skipped", identity_id=identity_id)
            return
        self._entries[identity_id] = (time.monotonic() + ttl_seconds, role)

    async def invalidate(self, identity_id: str) -> None:
        self._entries.pop(identity_id, None)
        self._generations[identity_id] = self._generations.get(identity_id, 0) + 1

    async def clear(self) -> None:
        self._entries.clear()
        self._generations.clear()
        self._epoch += 1

    def __len__(self) -> int:
        return len(self._entries)


class RedisRoleCache(RoleCache):
    """Cache shared across processes through Redis.

    Entries carry the generation they were computed under; ``get`` treats an
    entry whose generation no longer matches as a miss, since another process
    may invalidate between our check and our write.
    """

    KEY_PREFIX = "flock:role:"
    GENERATION_PREFIX = "flock:role-gen:"
    EPOCH_KEY = "flock:role-epoch"

    def __init__(self, client: redis.Redis):
        self._redis = client

    def _key(self, identity_id: str) -> str:
        return f"{self.KEY_PREFIX}{identity_id}"

    def _generation_key(self, identity_id: str) -> str:
        return f"{self.GENERATION_PREFIX}{identity_id}"

    async def _read_generation(self, identity_id: str) -> Generation:
        epoch, gen = await self._redis.mget(self.EPOCH_KEY, self._generation_key(identity_id))
        return int(epoch or 0), int(gen or 0)

    async def get(self, identity_id: str) -> Optional["EffectiveRole"]:
        from app.services.roles import EffectiveRole

        try:
            raw, epoch, gen = await self._redis.mget(
                self._key(identity_id), self.EPOCH_KEY, self._generation_key(identity_id)
            )
        except redis.RedisError as exc:
            log.warning("role_cache.read_failed", identity_id=identity_id, error=str(exc))
            return None
        if raw is None:
            return None
        payload = json.loads(raw)
        if payload.get("generation") != [int(epoch or 0), int(gen or 0)]:
            return None
        return EffectiveRole.from_dict(payload["role"])

    async def generation(self, identity_id: str) -> Optional[Generation]:
        try:
            return await self._read_generation(identity_id)
        except redis.RedisError as exc:
            log.warning("role_cache.read_failed", identity_id=identity_id, error=str(exc))
            return None

    async def set(
        self,
        identity_id: str,
        role: "EffectiveRole",
        ttl_seconds: int,
        *,
        generation: Optional[Generation] = None,
    ) -> None:
        try:
            if generation is None:
                generation = await self._read_generation(identity_id)
            payload = {"role": role.to_dict(), "generation": list(generation)}
            await self._redis.setex(self._key(identity_id), ttl_seconds, json.dumps(payload))
        except redis.RedisError as exc:
            log.warning("role_cache.write_failed", identity_id=identity_id, error=str(exc))

    async def invalidate(self, identity_id: str) -> None:
        try:
            await self._redis.incr(self._generation_key(identity_id))
            await self._redis.delete(self._key(identity_id))
        except redis.RedisError as exc:
            log.warning("role_cache.invalidate_failed", identity_id=identity_id, error=str(exc))

    async def clear(self) -> None:
        try:
            await self._redis.incr(self.EPOCH_KEY)
            keys = [key async for key in self._redis.scan_iter(match=f"{self.KEY_PREFIX}*")]
            if keys:
                await self._redis.delete(*keys)
        except redis.RedisError as exc:
            log.warning("role_cache.clear_failed", error=str(exc))
