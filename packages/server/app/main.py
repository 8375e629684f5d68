"""
Flock Identity Service

Entry point for the FastAPI application.
"""

from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import Settings, get_settings
from app.core.errors import IdentityError, register_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from app.core.services import IdentityServices, build_services
from app.api.v1 import router as api_v1_router

log = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    *,
    services: Optional[IdentityServices] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Flock Identity",
        description="Identity reconciliation and authorization resolution for Flock.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    # Wired eagerly so the app is usable without running lifespan events
    app.state.services = services or build_services(settings)

    # Middleware (order matters - last added is outermost)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness probes."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check: the identity store must answer."""
        try:
            await app.state.services.store.ping()
        except IdentityError as exc:
            return JSONResponse(
                status_code=503,
                content={"status": "unavailable", "code": exc.code.value},
            )
        return {"status": "ready", "allowlist_size": len(app.state.services.allowlist)}

    @app.on_event("startup")
    async def on_startup():
        log.info(
            "identity_service.starting",
            role_cache=settings.role_cache_backend,
            allowlist_size=len(app.state.services.allowlist),
        )

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("identity_service.stopping")
        await app.state.services.close()

    return app


app = create_app()
