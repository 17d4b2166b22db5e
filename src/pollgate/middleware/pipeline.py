"""Request protection pipeline.

Every request passes through the same ordered stages:

1. resolve the session (user id or none)
2. rate limit by route class and identity, rejecting with 429
3. CSRF validation for state-changing requests, rejecting with 403
4. session-based route gating (redirects only, never fails)
5. stamp the response with a fresh CSRF pair and the rate limit headers,
   unless the handler already issued a pair

A rejection in stage 2 or 3 ends the request; later stages never run.
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.types import ASGIApp

from pollgate.core.errors import (
    CryptoBackendUnavailable,
    CSRFValidationFailed,
    RateLimitExceeded,
)
from pollgate.core.settings import Settings, settings
from pollgate.services.csrf import (
    CSRF_TOKEN_HEADER,
    CSRFProtectionService,
    get_csrf_service,
)
from pollgate.services.rate_limiter import (
    RateLimitDecision,
    RateLimiter,
    get_client_id,
    get_rate_limiter,
    retry_after_seconds,
)
from pollgate.services.session import Session, SessionProvider, get_session_provider

logger = logging.getLogger(__name__)


def _under(path: str, prefix: str) -> bool:
    """Return True if ``path`` is ``prefix`` or lies below it."""
    if prefix.endswith("/"):
        return path.startswith(prefix) or path == prefix.rstrip("/")
    return path == prefix or path.startswith(f"{prefix}/")


class RequestProtectionMiddleware(BaseHTTPMiddleware):
    """Starlette middleware running rate limiting, CSRF and route gating in one pass."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        csrf_service: CSRFProtectionService | None = None,
        rate_limiter: RateLimiter | None = None,
        session_provider: SessionProvider | None = None,
        config: Settings | None = None,
    ) -> None:
        super().__init__(app)
        self.config = config or settings
        self.csrf_service = csrf_service or get_csrf_service()
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.session_provider = session_provider or get_session_provider()

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        session = await self._resolve_session(request)
        user_id = session.user.id if session is not None else None
        request.state.user_id = user_id
        request.state.client_id = get_client_id(request, user_id)

        try:
            decision = self._rate_limit_stage(request, user_id)
            if decision is not None:
                request.state.client_id = decision.client_id
            await self._csrf_stage(request, user_id)
        except RateLimitExceeded as exc:
            return self._rate_limited_response(exc)
        except CSRFValidationFailed as exc:
            return self._csrf_rejected_response(exc)
        except CryptoBackendUnavailable:
            logger.error(
                "Crypto backend unavailable while protecting %s", request.url.path, exc_info=True
            )
            return _internal_error_response()

        redirect = self._redirect_stage(request, session)
        response = redirect if redirect is not None else await call_next(request)

        try:
            return self._augment_response(response, user_id, decision)
        except CryptoBackendUnavailable:
            logger.error(
                "Crypto backend unavailable while stamping %s", request.url.path, exc_info=True
            )
            if response.status_code >= 500:
                return response
            return _internal_error_response()

    async def _resolve_session(self, request: Request) -> Session | None:
        return await self.session_provider.get_session(request)

    def _rate_limit_stage(self, request: Request, user_id: str | None) -> RateLimitDecision | None:
        """Count the request; raise `RateLimitExceeded` when the quota is spent."""
        if not self.config.rate_limit_enabled:
            return None

        decision = self.rate_limiter.check_request(request, user_id)
        if decision.allowed:
            return decision

        retry_after = retry_after_seconds(decision.result.reset_time, self.rate_limiter.now())
        logger.warning(
            "Rate limit exceeded: %s on %s %s (class=%s)",
            decision.client_id,
            request.method,
            request.url.path,
            decision.route_class,
        )
        raise RateLimitExceeded(
            decision.config.message,
            retry_after=retry_after,
            reset_time=decision.result.reset_time,
            limit=decision.config.limit,
        )

    async def _csrf_stage(self, request: Request, user_id: str | None) -> None:
        """Raise `CSRFValidationFailed` unless the request carries a valid pair."""
        result = await self.csrf_service.validate_for_request(request, user_id)
        if result.valid:
            return
        logger.warning("CSRF validation failed on %s %s", request.method, request.url.path)
        raise CSRFValidationFailed(result.error or "CSRF validation failed.")

    def _redirect_stage(self, request: Request, session: Session | None) -> Response | None:
        """Return a redirect for gated page routes, or None to pass through."""
        path = request.url.path
        if any(_under(path, prefix) for prefix in self.config.gate_exempt_prefixes):
            return None

        on_auth_page = _under(path, "/auth")
        if session is None:
            if path == self.config.home_path:
                return None
            if any(_under(path, prefix) for prefix in self.config.public_path_prefixes):
                return None
            return RedirectResponse(self.config.login_path, status_code=307)

        if on_auth_page:
            return RedirectResponse(self.config.home_path, status_code=307)
        return None

    def _augment_response(
        self,
        response: Response,
        user_id: str | None,
        decision: RateLimitDecision | None,
    ) -> Response:
        if decision is not None:
            response.headers.update(decision.headers())
        # Handlers that mint their own pair keep it.
        if CSRF_TOKEN_HEADER not in response.headers:
            self.csrf_service.add_headers(response, user_id)
        return response

    def _rate_limited_response(self, exc: RateLimitExceeded) -> JSONResponse:
        content: dict[str, Any] = {
            "success": False,
            "error": exc.message,
            "retryAfter": exc.retry_after,
        }
        return JSONResponse(
            status_code=429,
            content=content,
            headers={
                "Retry-After": str(exc.retry_after),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(exc.reset_time),
            },
        )

    def _csrf_rejected_response(self, exc: CSRFValidationFailed) -> JSONResponse:
        return JSONResponse(status_code=403, content={"success": False, "error": exc.message})


def _internal_error_response() -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"},
    )
