# src/pollgate/services/__init__.py
"""Request protection services for the Pollgate application."""

from .csrf import CSRFProtectionService
from .rate_limiter import InMemoryRateLimitStore, RateLimiter, RateLimitSweeper
from .session import JWTSessionProvider

__all__ = [
    "CSRFProtectionService",
    "InMemoryRateLimitStore",
    "RateLimiter",
    "RateLimitSweeper",
    "JWTSessionProvider",
]
