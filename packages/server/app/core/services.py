"""
Service wiring.

Builds the store, caches and services once per process and hands them out to
request handlers, background tasks and CLI scripts alike.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.config import Settings
from app.core.database import create_engine
from app.core.redis import close_redis, get_redis
from app.services.allowlist import AdminAllowlist
from app.services.identities import IdentityLifecycle
from app.services.reconciler import ReconcileTracker, Reconciler
from app.services.repair import RepairRunner
from app.services.role_cache import MemoryRoleCache, NullRoleCache, RedisRoleCache, RoleCache
from app.services.roles import RoleResolver
from app.services.sql_store import SqlIdentityStore
from app.services.store import IdentityStore

log = structlog.get_logger()


@dataclass
class IdentityServices:
    settings: Settings
    store: IdentityStore
    allowlist: AdminAllowlist
    role_cache: RoleCache
    tracker: ReconcileTracker
    reconciler: Reconciler
    resolver: RoleResolver
    lifecycle: IdentityLifecycle
    engine: Optional[AsyncEngine] = None

    def repair_runner(
        self,
        *,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
    ) -> RepairRunner:
        return RepairRunner(
            self.store,
            self.reconciler,
            self.resolver,
            batch_size=batch_size or self.settings.repair_batch_size,
            concurrency=concurrency or self.settings.repair_concurrency,
            timeout=self.settings.repair_timeout_seconds,
        )

    async def close(self) -> None:
        if isinstance(self.role_cache, RedisRoleCache):
            await close_redis()
        if self.engine is not None:
            await self.engine.dispose()


def build_role_cache(settings: Settings) -> RoleCache:
    if settings.role_cache_backend == "redis":
        return RedisRoleCache(get_redis(settings.redis_url))
    if settings.role_cache_backend == "none":
        return NullRoleCache()
    return MemoryRoleCache()


def build_services(
    settings: Settings,
    *,
    store: Optional[IdentityStore] = None,
    role_cache: Optional[RoleCache] = None,
) -> IdentityServices:
    """Wire the identity services. Pass `store` to reuse an existing one (tests)."""
    engine = None
    if store is None:
        engine = create_engine(settings.database_url, echo=settings.debug)
        store = SqlIdentityStore(engine)
    if role_cache is None:
        role_cache = build_role_cache(settings)

    allowlist = AdminAllowlist(
        settings.admin_emails,
        settings.admin_allowlist_path,
        refresh_seconds=settings.allowlist_refresh_seconds,
    )
    allowlist.load()

    tracker = ReconcileTracker()
    timeout = settings.interactive_timeout_seconds
    reconciler = Reconciler(store, tracker=tracker, role_cache=role_cache, timeout=timeout)
    resolver = RoleResolver(
        store,
        allowlist,
        cache=role_cache,
        tracker=tracker,
        cache_ttl_seconds=settings.role_cache_ttl_seconds,
        timeout=timeout,
    )
    lifecycle = IdentityLifecycle(store, reconciler, resolver, timeout=timeout)
    log.info(
        "services.built",
        role_cache=settings.role_cache_backend,
        allowlist_size=len(allowlist),
    )
    return IdentityServices(
        settings=settings,
        store=store,
        allowlist=allowlist,
        role_cache=role_cache,
        tracker=tracker,
        reconciler=reconciler,
        resolver=resolver,
        lifecycle=lifecycle,
        engine=engine,
    )


def get_services(request: Request) -> IdentityServices:
    """FastAPI dependency returning the process-wide services."""
    return request.app.state.services
