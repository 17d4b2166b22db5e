"""Session lookup used for identity derivation and route gating.

The request pipeline only needs "who is the current user, if anyone". Hosts
plug in their own identity provider by implementing `SessionProvider`; the
default provider reads a JWT access token from the ``Authorization`` header
or the session cookie.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from jose import JWTError, jwt
from starlette.requests import Request
from starlette.responses import Response

from pollgate.core.settings import Settings, settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionUser:
    """The authenticated principal attached to a session."""

    id: str


@dataclass(frozen=True)
class Session:
    """An authenticated session as seen by the request pipeline."""

    user: SessionUser


class SessionProvider(Protocol):
    """Contract for resolving the session of an inbound request."""

    async def get_session(self, request: Request) -> Session | None: ...


def create_access_token(
    subject: str,
    extra_claims: dict[str, str] | None = None,
    config: Settings | None = None,
) -> str:
    """Create a JWT access token understood by `JWTSessionProvider`."""
    config = config or settings
    to_encode: dict[str, object] = {"sub": subject}
    if extra_claims:
        to_encode.update(extra_claims)
    expire = datetime.now(UTC) + timedelta(minutes=config.access_token_expire_minutes)
    to_encode["exp"] = expire
    encoded_jwt: str = jwt.encode(
        to_encode,
        config.secret_key,
        algorithm=config.jwt_algorithm,
    )
    return encoded_jwt


def set_session_cookie(response: Response, token: str, config: Settings | None = None) -> None:
    """Attach the access token to ``response`` as an HTTP-only cookie."""
    config = config or settings
    response.set_cookie(
        config.session_cookie_name,
        token,
        max_age=config.access_token_expire_minutes * 60,
        httponly=True,
        secure=not config.debug,
        samesite="lax",
    )


def clear_session_cookie(response: Response, config: Settings | None = None) -> None:
    """Remove the session cookie from the client."""
    config = config or settings
    response.delete_cookie(config.session_cookie_name)


class JWTSessionProvider:
    """Resolve sessions from bearer tokens or the session cookie."""

    def __init__(self, config: Settings | None = None) -> None:
        self._config = config or settings

    def _read_token(self, request: Request) -> str | None:
        authorization = request.headers.get("authorization")
        if authorization:
            scheme, _, credentials = authorization.partition(" ")
            if scheme.lower() == "bearer" and credentials.strip():
                return credentials.strip()
        return request.cookies.get(self._config.session_cookie_name) or None

    async def get_session(self, request: Request) -> Session | None:
        """Return the session for ``request`` or None if it carries no valid token."""
        token = self._read_token(request)
        if token is None:
            return None
        try:
            payload = jwt.decode(
                token,
                self._config.secret_key,
                algorithms=[self._config.jwt_algorithm],
            )
        except JWTError:
            logger.debug("Ignoring invalid access token on %s", request.url.path)
            return None

        subject = payload.get("sub")
        if not subject:
            return None
        return Session(user=SessionUser(id=str(subject)))


def get_session_provider() -> SessionProvider:
    """Return the default JWT-backed session provider."""
    return JWTSessionProvider()
