from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from quotagate.app.core.config import Settings, settings
from quotagate.app.core.logging import get_logger, setup_logging
from quotagate.app.core.store import CounterStore, build_counter_store
from quotagate.app.middleware.rate_limit import (
    RateLimitMiddleware,
    RateLimitOverride,
    RateLimitRule,
    RuleSetOverlay,
)

HOUR = 60 * 60


def build_auth_predicate(app_settings: Settings):
    """Build the demo authentication predicate.

    A real deployment would check a session or a JWT here.
    """
    def is_authenticated(request: Request) -> bool:
        return request.headers.get("X-API-Key") == app_settings.api_key

    return is_authenticated


def build_launch_override(app_settings: Settings, now: datetime) -> RateLimitOverride:
    """Raised /api/auth limit for one user, starting ``now``."""
    user = app_settings.override_user

    def is_override_user(request: Request) -> bool:
        return request.headers.get("X-User") == user

    return RateLimitOverride(
        start_time=now,
        end_time=now + timedelta(days=app_settings.override_days),
        rule=RateLimitRule(window_seconds=HOUR, max_requests=1000),
        endpoints=frozenset({"/api/auth"}),
        criteria=is_override_user,
    )


def create_app(
    app_settings: Optional[Settings] = None,
    store: Optional[CounterStore] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        app_settings: Settings to use, the global settings by default
        store: Counter store to use, built from settings by default

    Returns:
        Configured FastAPI application instance
    """
    app_settings = app_settings or settings
    setup_logging()
    logger = get_logger(__name__)

    store = store or build_counter_store(app_settings)
    is_authenticated = build_auth_predicate(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan: close the counter store on shutdown."""
        logger.info(
            "Application startup complete",
            extra={
                "store": type(store).__name__,
                "algorithm": app_settings.rate_limit_algorithm,
            },
        )
        yield
        await store.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="quotagate",
        description="API rate limiting backed by a shared counter store",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.counter_store = store

    app.add_middleware(
        RateLimitMiddleware,
        store=store,
        key_prefix=app_settings.rate_limit_key_prefix,
        is_authenticated=is_authenticated,
        algorithm=app_settings.rate_limit_algorithm,
        custom_limits=RuleSetOverlay(
            authenticated=RateLimitRule(window_seconds=HOUR, max_requests=200),
            unauthenticated=RateLimitRule(window_seconds=HOUR, max_requests=100),
        ),
        overrides=[build_launch_override(app_settings, datetime.now(timezone.utc))],
        mount_path=app_settings.rate_limit_mount_path,
    )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with counter store status."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}
        try:
            await store.get("_health_check_probe")
            health_status["components"]["store"] = {
                "status": "ok",
                "type": type(store).__name__,
            }
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["components"]["store"] = {
                "status": "error",
                "error": str(e)[:100],  # Truncate for security
            }
        return health_status

    @app.get("/api/public")
    async def public_endpoint(request: Request) -> dict[str, Any]:
        return {
            "message": "This is a public API endpoint",
            "authenticated": is_authenticated(request),
        }

    @app.get("/api/auth")
    async def protected_endpoint(request: Request):
        if not is_authenticated(request):
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})
        return {"message": "This is a protected API endpoint"}

    return app


app = create_app()
