from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from resilience.app.api.notifications import router as notifications_router
from resilience.app.api.realtime import router as realtime_router
from resilience.app.api.session import router as session_router
from resilience.app.core.config import settings
from resilience.app.core.logging import get_logger, setup_logging
from resilience.app.exceptions import AuthenticationError, RateLimitExceededError
from resilience.app.middleware.rate_limit import (
    RateLimitMiddleware,
    create_api_rate_limiter,
    create_auth_rate_limiter,
    rate_limit_response,
)
from resilience.app.middleware.request_id import RequestIdMiddleware
from resilience.app.realtime.registry import ConnectionRegistry


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    registry = ConnectionRegistry(
        sweep_interval=settings.ws_sweep_interval_seconds,
        inactivity_timeout=settings.ws_inactivity_timeout_seconds,
    )
    auth_rate_limiter = create_auth_rate_limiter()
    api_rate_limiter = create_api_rate_limiter()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the realtime connection sweeper; stop it on shutdown."""
        await registry.start()
        logger.info(
            "Application startup complete",
            extra={"ws_path": settings.ws_path, "debug_mode": settings.debug},
        )

        yield

        await registry.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="ResilienceHub Realtime",
        description="Rate limiting and realtime notification delivery for ResilienceHub",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.auth_rate_limiter = auth_rate_limiter
    app.state.api_rate_limiter = api_rate_limiter

    # Add middleware (last added = outermost)
    # Rate limit middleware runs inside the session middleware so it can see the identity
    app.add_middleware(
        RateLimitMiddleware,
        limiter=api_rate_limiter,
        path_prefixes=settings.api_rate_limit_path_prefixes,
    )

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret_key,
        session_cookie=settings.session_cookie,
        max_age=settings.session_max_age,
        same_site="lax",
        https_only=settings.session_https_only,
    )

    app.add_middleware(RequestIdMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
        max_age=600,
    )

    # Outermost: resolve the client address before anything keys on it.
    # Only peers listed in TRUSTED_PROXIES may set X-Forwarded-For.
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.trusted_proxies)

    app.include_router(session_router)
    app.include_router(notifications_router)
    app.include_router(realtime_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with realtime connection statistics."""
        return {
            "status": "ok",
            "components": {
                "realtime": {"status": "ok", **registry.stats()},
                "rate_limiter": {
                    "status": "ok",
                    "auth_tracked_clients": auth_rate_limiter.tracked_clients,
                    "api_tracked_clients": api_rate_limiter.tracked_clients,
                },
            },
        }

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return rate_limit_response(exc.retry_after, exc.message)

    @app.exception_handler(AuthenticationError)
    async def auth_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        """Handle AuthenticationError and return HTTP 401 response."""
        return JSONResponse(
            status_code=401,
            content={"error": "authentication_failed", "message": exc.detail}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        The traceback is logged server-side and never returned to the client.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            }
        )

        content = {
            "error": "internal_error",
            "message": str(exc) if settings.debug else "Internal server error",
            "request_id": request_id,
        }
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()


def run() -> None:
    """Serve the application with uvicorn (``resilience-hub`` entry point)."""
    uvicorn.run(
        "resilience.app.main:app",
        host=settings.host,
        port=settings.port,
        # Forwarded headers are handled by the app's own ProxyHeadersMiddleware
        proxy_headers=False,
        log_config=None,
    )
