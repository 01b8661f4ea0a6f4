from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from quotagate.app.core.config import settings
from quotagate.app.core.logging import get_logger, setup_logging
from quotagate.app.db.async_session import close_async_engine
from quotagate.app.db.init_db import init_database, verify_connection
from quotagate.app.exceptions import AdmissionError
from quotagate.app.middleware.rate_limit import PlanRateLimitMiddleware, error_response
from quotagate.app.services.rate_limit import (
    DEFAULT_ROUTE_OVERRIDES,
    DatabaseFallbackCounter,
    PlanLookup,
    RateLimitService,
    RouteOverride,
    StaticPlanLookup,
    get_rate_limit_service,
)


def register_exception_handlers(app: FastAPI) -> None:
    """Render admission errors and hide unexpected ones."""
    logger = get_logger(__name__)

    @app.exception_handler(AdmissionError)
    async def admission_error_handler(request: Request, exc: AdmissionError) -> JSONResponse:
        """Handle rate-limit and identifier errors with their own status."""
        return error_response(exc, request.url.path)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; full details go to the log.
        """
        logger.exception(
            "Unhandled exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
        )
        content = {
            "code": "INTERNAL_SERVER_ERROR",
            "message": str(exc) if settings.debug else "Internal server error",
            "statusCode": 500,
            "path": request.url.path,
        }
        return JSONResponse(status_code=500, content=content)


def create_app(
    plan_lookup: Optional[PlanLookup] = None,
    route_overrides: Optional[Sequence[RouteOverride]] = None,
    service: Optional[RateLimitService] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        plan_lookup: Plan source; defaults to the settings' default plan for everyone
        route_overrides: Ordered route overrides; defaults to DEFAULT_ROUTE_OVERRIDES
        service: Admission service; defaults to the global instance

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    if plan_lookup is None:
        plan_lookup = StaticPlanLookup(default=settings.default_plan())
    if route_overrides is None:
        route_overrides = DEFAULT_ROUTE_OVERRIDES

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Create fallback tables on startup, release stores on shutdown."""
        rate_limit_service = service or get_rate_limit_service()

        if isinstance(rate_limit_service.fallback, DatabaseFallbackCounter):
            if await verify_connection():
                await init_database()
                await rate_limit_service.fallback.start_purge_task()
            else:
                # Requests still pass: a failing fallback only means fail-open.
                logger.warning("Fallback database unreachable; Redis outages will fail open")

        logger.info(
            "Application startup complete",
            extra={
                "counter_store": rate_limit_service.primary.name,
                "fallback_store": getattr(rate_limit_service.fallback, "name", None),
                "rate_limit_enabled": settings.rate_limit_enabled,
            },
        )

        yield

        await rate_limit_service.close()
        await close_async_engine()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="QuotaGate",
        description="Fixed-window admission control with shared multi-tier quotas",
        version="1.0.0",
        lifespan=lifespan,
    )

    if settings.rate_limit_enabled:
        app.add_middleware(
            PlanRateLimitMiddleware,
            plan_lookup=plan_lookup,
            route_overrides=route_overrides,
            service=service,
        )

    register_exception_handlers(app)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Report which counter stores are configured."""
        rate_limit_service = service or get_rate_limit_service()
        return {
            "status": "ok",
            "components": {
                "counter_store": rate_limit_service.primary.name,
                "fallback_store": getattr(rate_limit_service.fallback, "name", None),
            },
        }

    return app


# Create the application instance
app = create_app()
