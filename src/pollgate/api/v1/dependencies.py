"""Shared API dependencies resolving the services wired into the application."""

from typing import Annotated

from fastapi import Depends, Request

from pollgate.core.settings import Settings, get_settings
from pollgate.services.csrf import CSRFProtectionService, get_csrf_service
from pollgate.services.rate_limiter import RateLimiter, get_rate_limiter
from pollgate.services.session import SessionProvider, get_session_provider


def get_settings_dep(request: Request) -> Settings:
    """Return the settings the application was built with."""
    config = getattr(request.app.state, "settings", None)
    return config if config is not None else get_settings()


def get_csrf_service_dep(request: Request) -> CSRFProtectionService:
    """Return the CSRF service the application was built with."""
    service = getattr(request.app.state, "csrf_service", None)
    return service if service is not None else get_csrf_service()


def get_rate_limiter_dep(request: Request) -> RateLimiter:
    """Return the rate limiter the application was built with."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    return limiter if limiter is not None else get_rate_limiter()


def get_session_provider_dep(request: Request) -> SessionProvider:
    """Return the session provider the application was built with."""
    provider = getattr(request.app.state, "session_provider", None)
    return provider if provider is not None else get_session_provider()


SettingsDep = Annotated[Settings, Depends(get_settings_dep)]
CSRFServiceDep = Annotated[CSRFProtectionService, Depends(get_csrf_service_dep)]
RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter_dep)]
SessionProviderDep = Annotated[SessionProvider, Depends(get_session_provider_dep)]
