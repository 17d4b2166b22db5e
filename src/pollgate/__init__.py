"""Pollgate: request protection layer for the polling application."""

__version__ = "0.1.0"
