# src/pollgate/main.py
"""Main entry point for the Pollgate application."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pollgate.api.v1 import csrf_router, system_router
from pollgate.core.settings import Settings, settings
from pollgate.middleware.pipeline import RequestProtectionMiddleware
from pollgate.services.csrf import CSRFProtectionService
from pollgate.services.rate_limiter import (
    Clock,
    RateLimiter,
    RateLimitStore,
    RateLimitSweeper,
    build_rate_limits,
)
from pollgate.services.session import JWTSessionProvider, SessionProvider

logger = logging.getLogger(__name__)


def configure_logging(config: Settings | None = None) -> None:
    """Apply the configured log level to the root logger."""
    config = config or settings
    level = logging.getLevelName(config.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(
    config: Settings | None = None,
    *,
    session_provider: SessionProvider | None = None,
    rate_limit_store: RateLimitStore | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Build the FastAPI application with the request protection pipeline.

    Args:
        config: Settings to use; defaults to the process-wide settings.
        session_provider: Session collaborator; defaults to the JWT provider.
        rate_limit_store: Counter backend; defaults to an in-memory store.
        clock: Millisecond clock for rate limit windows; defaults to wall time.

    Returns:
        Configured FastAPI application
    """
    config = config or settings
    csrf_service = CSRFProtectionService(
        config.csrf_secret,
        token_bytes=config.csrf_token_bytes,
        exempt_prefixes=config.csrf_exempt_prefixes,
    )
    rate_limiter = RateLimiter(
        store=rate_limit_store, limits=build_rate_limits(config), clock=clock
    )
    session_provider = session_provider or JWTSessionProvider(config)
    sweeper = RateLimitSweeper(rate_limiter.store, config.rate_limit_sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(config)
        if config.uses_default_csrf_secret:
            logger.warning("CSRF_SECRET is not set; using the insecure placeholder secret")
        await sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
            rate_limiter.store.clear()

    app = FastAPI(
        title="Pollgate API",
        description="Request protection layer for the polling application",
        version=config.app_version,
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.csrf_service = csrf_service
    app.state.rate_limiter = rate_limiter
    app.state.session_provider = session_provider
    app.state.rate_limit_sweeper = sweeper

    app.add_middleware(
        RequestProtectionMiddleware,
        csrf_service=csrf_service,
        rate_limiter=rate_limiter,
        session_provider=session_provider,
        config=config,
    )
    # Added last so it wraps the pipeline and answers preflight requests first.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=config.cors_allow_credentials,
        allow_methods=config.cors_allow_methods,
        allow_headers=config.cors_allow_headers,
        expose_headers=[
            "X-CSRF-Token",
            "X-CSRF-Hash",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

    app.include_router(csrf_router, prefix="/api")
    app.include_router(system_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint to verify the service is running."""
        return {"status": "ok"}

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with basic information about the API."""
        return {
            "name": config.app_name,
            "version": config.app_version,
            "docs": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run("pollgate.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
