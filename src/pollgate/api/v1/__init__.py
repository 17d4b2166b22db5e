# src/pollgate/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import csrf_router, system_router

__all__ = [
    "csrf_router",
    "system_router",
]
