"""
Role cache backend tests.
"""

from __future__ import annotations

import json

import pytest
import redis.asyncio as redis

from app.services.role_cache import MemoryRoleCache, NullRoleCache, RedisRoleCache
from app.services.roles import EffectiveRole
from flock_shared.schemas.common import RoleKind, RoleSource

ROLE = EffectiveRole(RoleKind.ADMIN, RoleSource.ALLOWLIST)


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache."""

    def __init__(self, *, broken: bool = False):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.broken = broken

    def _check(self):
        if self.broken:
            raise redis.ConnectionError("redis down")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def mget(self, *keys):
        self._check()
        return [self.data.get(key) for key in keys]

    async def incr(self, key):
        self._check()
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])

    async def setex(self, key, ttl, value):
        self._check()
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys):
        self._check()
        for key in keys:
            self.data.pop(key, None)

    async def scan_iter(self, match=None):
        self._check()
        prefix = match.rstrip("*") if match else ""
        for key in list(self.data):
            if key.startswith(prefix):
                yield key


class TestMemoryRoleCache:
    async def test_set_get_invalidate(self):
        cache = MemoryRoleCache()
        await cache.set("u1", ROLE, 60)
        assert await cache.get("u1") == ROLE
        await cache.invalidate("u1")
        assert await cache.get("u1") is None

    async def test_expiry(self):
        cache = MemoryRoleCache()
        await cache.set("u1", ROLE, 0)
        assert await cache.get("u1") is None
        assert len(cache) == 0

    async def test_clear(self):
        cache = MemoryRoleCache()
        await cache.set("u1", ROLE, 60)
        await cache.set("u2", ROLE, 60)
        await cache.clear()
        assert len(cache) == 0

    async def test_write_computed_before_invalidate_is_skipped(self):
        cache = MemoryRoleCache()
        generation = await cache.generation("u1")

        await cache.invalidate("u1")
        await cache.set("u1", ROLE, 60, generation=generation)

        assert await cache.get("u1") is None
        await cache.set("u1", ROLE, 60, generation=await cache.generation("u1"))
        assert await cache.get("u1") == ROLE


async def test_null_cache_never_hits():
    cache = NullRoleCache()
    await cache.set("u1", ROLE, 60)
    assert await cache.get("u1") is None


class TestRedisRoleCache:
    async def test_round_trip(self):
        client = FakeRedis()
        cache = RedisRoleCache(client)

        await cache.set("u1", ROLE, 30)

        assert client.ttls["flock:role:u1"] == 30
        assert json.loads(client.data["flock:role:u1"])["role"]["source"] == "allowlist"
        assert await cache.get("u1") == ROLE

    async def test_clear_only_touches_role_keys(self):
        client = FakeRedis()
        client.data["other:key"] = "1"
        cache = RedisRoleCache(client)
        await cache.set("u1", ROLE, 30)

        await cache.clear()

        assert "flock:role:u1" not in client.data
        assert client.data["other:key"] == "1"

    @pytest.mark.parametrize("op", ["get", "generation", "set", "invalidate", "clear"])
    async def test_backend_failure_degrades_to_miss(self, op):
        cache = RedisRoleCache(FakeRedis(broken=True))
        if op == "get":
            assert await cache.get("u1") is None
        elif op == "generation":
            assert await cache.generation("u1") is None
        elif op == "set":
            await cache.set("u1", ROLE, 30)
        elif op == "invalidate":
            await cache.invalidate("u1")
        else:
            await cache.clear()

    async def test_write_computed_before_invalidate_is_a_miss(self):
        cache = RedisRoleCache(FakeRedis())
        generation = await cache.generation("u1")

        await cache.invalidate("u1")
        await cache.set("u1", ROLE, 30, generation=generation)

        assert await cache.get("u1") is None

    async def test_clear_outdates_every_entry(self):
        client = FakeRedis()
        cache = RedisRoleCache(client)
        generation = await cache.generation("u1")

        await cache.clear()
        await cache.set("u1", ROLE, 30, generation=generation)

        assert await cache.get("u1") is None
        await cache.set("u1", ROLE, 30)
        assert await cache.get("u1") == ROLE
