"""
ARQ background task: nightly repair/audit of every identity.

Reconciles all credentials and re-resolves their roles, logging the report so
drift (missing profiles, unlinked legacy memberships, conflicts) is visible
even when nobody logs in.
"""

from __future__ import annotations

import structlog

from app.core.config import get_settings
from app.core.services import build_services

log = structlog.get_logger()


async def run_scheduled_repair(ctx: dict) -> dict:
    """Run a full repair pass. Returns the report as a dict."""
    services = ctx.get("services")
    owned = services is None
    if owned:
        services = build_services(get_settings())
    try:
        report = await services.repair_runner().run(fix=True)
    finally:
        if owned:
            await services.close()

    if report.conflicts:
        log.warning(
            "identity_repair.conflicts_pending",
            count=len(report.conflicts),
            identity_ids=[c.identity_id for c in report.conflicts],
        )
    return report.to_dict()


async def startup(ctx: dict) -> None:
    ctx["services"] = build_services(get_settings())


async def shutdown(ctx: dict) -> None:
    services = ctx.pop("services", None)
    if services is not None:
        await services.close()


# ARQ worker settings
class WorkerSettings:
    """ARQ worker configuration."""

    functions = [run_scheduled_repair]
    on_startup = startup
    on_shutdown = shutdown
    cron_jobs = [
        # Nightly, off-peak
        {
            "coroutine": run_scheduled_repair,
            "hour": 3,
            "minute": 0,
        },
    ]
