"""CSRF token issuance endpoint.

Pages fetch a pair from here before rendering a form instead of relying
only on the pair stamped onto every response by the middleware.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from pollgate.api.v1.dependencies import CSRFServiceDep, SessionProviderDep
from pollgate.core.errors import CryptoBackendUnavailable
from pollgate.services.csrf import CSRF_HASH_HEADER, CSRF_TOKEN_HEADER

logger = logging.getLogger(__name__)

router = APIRouter(tags=["csrf"])

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@router.get("/csrf-token")
async def issue_csrf_token(
    request: Request,
    csrf_service: CSRFServiceDep,
    session_provider: SessionProviderDep,
) -> JSONResponse:
    """Return a fresh CSRF pair bound to the caller in the response headers."""
    if hasattr(request.state, "user_id"):
        user_id = request.state.user_id
    else:
        session = await session_provider.get_session(request)
        user_id = session.user.id if session is not None else None

    try:
        pair = csrf_service.generate_token_pair(user_id)
    except CryptoBackendUnavailable:
        logger.error("Error generating CSRF tokens", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to generate CSRF tokens"},
        )

    return JSONResponse(
        status_code=200,
        content={"success": True},
        headers={
            CSRF_TOKEN_HEADER: pair.token,
            CSRF_HASH_HEADER: pair.hash,
            **NO_CACHE_HEADERS,
        },
    )
