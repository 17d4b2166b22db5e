"""Endpoint routers for the Pollgate API."""

from .csrf import router as csrf_router
from .system import router as system_router

__all__ = ["csrf_router", "system_router"]
