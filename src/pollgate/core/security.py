"""Token primitives for stateless CSRF pairs."""
from __future__ import annotations

import hashlib
import secrets

from pollgate.core.errors import CryptoBackendUnavailable

ANONYMOUS_IDENTITY = "anonymous"
DEFAULT_TOKEN_BYTES = 32


def generate_token(num_bytes: int = DEFAULT_TOKEN_BYTES) -> str:
    """Return a hex-encoded token drawn from the operating system CSPRNG.

    Args:
        num_bytes: Amount of entropy in bytes; the hex string is twice as long.

    Raises:
        CryptoBackendUnavailable: If the OS randomness source cannot be used.
    """
    try:
        return secrets.token_hex(num_bytes)
    except (NotImplementedError, OSError) as err:
        raise CryptoBackendUnavailable("secure random source unavailable") from err


def hash_token(token: str, identity: str | None, secret: str) -> str:
    """Return the SHA-256 hex digest of ``token:identity:secret``.

    A missing or empty identity is bound as ``anonymous``.
    """
    data = f"{token}:{identity or ANONYMOUS_IDENTITY}:{secret}"
    try:
        return hashlib.sha256(data.encode("utf-8")).hexdigest()
    except ValueError as err:  # pragma: no cover - FIPS builds without sha256
        raise CryptoBackendUnavailable("sha256 digest unavailable") from err
