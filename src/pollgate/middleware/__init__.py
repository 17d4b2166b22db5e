"""ASGI middleware for the Pollgate application."""

from .pipeline import RequestProtectionMiddleware

__all__ = ["RequestProtectionMiddleware"]
