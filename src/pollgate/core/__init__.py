"""Core configuration, errors and token primitives."""
