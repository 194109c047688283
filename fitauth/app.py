from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fitauth.api.error_handling import register_exception_handlers
from fitauth.api.routes import router
from fitauth.config import Settings, get_settings
from fitauth.logging import get_logger, set_correlation_id
from fitauth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
_HEALTH_PROBE_USER_ID = "00000000-0000-0000-0000-000000000000"


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # credentials are allowed, so never fall back to a wildcard
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    owns_runtime = app.state.runtime is None
    if owns_runtime:
        app.state.runtime = Runtime(app.state.settings)
    yield
    if owns_runtime:
        try:
            await app.state.runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))


def create_app(
    runtime: Optional[Runtime] = None, settings: Optional[Settings] = None
) -> FastAPI:
    """Build the API application.

    A prebuilt ``runtime`` is used as is (tests); otherwise one is created
    from ``settings`` when the app starts and closed when it stops.
    """
    settings = settings or (runtime.settings if runtime else get_settings())
    app = FastAPI(title="Fitness Scheduler Auth", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Reuse the client's X-Request-ID or mint one; echoed back and attached to logs."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        if settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request):
        """Liveness plus store and Redis reachability."""
        current: Optional[Runtime] = request.app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}
        healthy = current is not None
        if current is not None:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(current.store.get_user, _HEALTH_PROBE_USER_ID),
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                )
                checks["store"] = {"status": "healthy", "type": type(current.store).__name__}
            except Exception as exc:
                healthy = False
                logger.warning("health_check_store_failed", error=str(exc))
                checks["store"] = {"status": "unhealthy", "error": type(exc).__name__}
            if current.cache is None:
                checks["redis"] = {"status": "disabled"}
            else:
                try:
                    await asyncio.wait_for(
                        asyncio.to_thread(current.cache.verify_connection),
                        timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                    )
                    checks["redis"] = {"status": "healthy"}
                except Exception as exc:
                    healthy = False
                    logger.warning("health_check_redis_failed", error=str(exc))
                    checks["redis"] = {"status": "unhealthy", "error": type(exc).__name__}
        body = {
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    return app


app = create_app()
