"""Stateless CSRF protection for state-changing requests.

Tokens are minted as ``(token, hash)`` pairs where ``hash`` is a keyed digest
of the token, the caller's identity and the server secret. Nothing is stored
server side: a presented pair is valid exactly when its hash can be derived
again from its token for the identity making the request.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Final

from starlette.requests import Request
from starlette.responses import Response

from pollgate.core.errors import MalformedRequestBody
from pollgate.core.security import DEFAULT_TOKEN_BYTES, generate_token, hash_token
from pollgate.core.settings import settings

logger = logging.getLogger(__name__)

CSRF_TOKEN_HEADER: Final[str] = "X-CSRF-Token"
CSRF_HASH_HEADER: Final[str] = "X-CSRF-Hash"
CSRF_TOKEN_FIELD: Final[str] = "_csrf_token"
CSRF_HASH_FIELD: Final[str] = "_csrf_hash"

PROTECTED_METHODS: Final[frozenset[str]] = frozenset({"POST", "PUT", "PATCH", "DELETE"})
FORM_CONTENT_TYPES: Final[tuple[str, ...]] = (
    "application/x-www-form-urlencoded",
    "multipart/form-data",
)

INVALID_TOKEN_MESSAGE: Final[str] = "Invalid CSRF token. Please refresh the page and try again."
FORM_FAILURE_MESSAGE: Final[str] = "CSRF validation failed. Please refresh the page and try again."


@dataclass(frozen=True)
class CSRFTokenPair:
    """A freshly minted, self-verifying token/hash pair."""

    token: str
    hash: str


@dataclass(frozen=True)
class PresentedCSRF:
    """Token material found on an inbound request; either part may be missing."""

    token: str | None = None
    hash: str | None = None

    @property
    def complete(self) -> bool:
        return bool(self.token) and bool(self.hash)


@dataclass(frozen=True)
class CSRFValidationResult:
    """Outcome of validating a request."""

    valid: bool
    error: str | None = None


def is_form_request(request: Request) -> bool:
    """Return True if the request body is a URL-encoded or multipart form."""
    content_type = request.headers.get("content-type", "").lower()
    return any(kind in content_type for kind in FORM_CONTENT_TYPES)


class CSRFProtectionService:
    """Service minting and verifying CSRF token pairs."""

    def __init__(
        self,
        secret: str,
        *,
        token_bytes: int = DEFAULT_TOKEN_BYTES,
        exempt_prefixes: Iterable[str] = (),
    ) -> None:
        self._secret = secret
        self._token_bytes = token_bytes
        self._exempt_prefixes = tuple(exempt_prefixes)

    @property
    def exempt_prefixes(self) -> tuple[str, ...]:
        return self._exempt_prefixes

    def generate_token_pair(self, identity: str | None = None) -> CSRFTokenPair:
        """Mint a new pair bound to ``identity`` (or ``anonymous``)."""
        token = generate_token(self._token_bytes)
        return CSRFTokenPair(token=token, hash=hash_token(token, identity, self._secret))

    def verify(
        self, token: str | None, token_hash: str | None, identity: str | None = None
    ) -> bool:
        """Return True if ``token_hash`` is the digest of ``token`` for ``identity``.

        Missing or empty input is a plain ``False``; only a broken crypto
        backend raises.
        """
        if not token or not token_hash:
            return False
        expected = hash_token(token, identity, self._secret)
        return hmac.compare_digest(expected.encode("utf-8"), token_hash.encode("utf-8"))

    def requires_protection(self, method: str, path: str) -> bool:
        """Return True for state-changing methods on non-exempt paths.

        Auth callbacks and webhooks are verified by their own means
        (redirect flow, external signatures) and are never CSRF-checked.
        """
        if method.upper() not in PROTECTED_METHODS:
            return False
        return not any(path.startswith(prefix) for prefix in self._exempt_prefixes)

    def extract_from_request(self, request: Request) -> PresentedCSRF:
        """Return the header-carried pair if both headers are present."""
        token = request.headers.get(CSRF_TOKEN_HEADER)
        token_hash = request.headers.get(CSRF_HASH_HEADER)
        if token and token_hash:
            return PresentedCSRF(token=token, hash=token_hash)
        return PresentedCSRF()

    async def extract_from_form(self, request: Request) -> PresentedCSRF:
        """Read the pair from ``_csrf_token``/``_csrf_hash`` form fields.

        The body is buffered first so the downstream handler can still read it.

        Raises:
            MalformedRequestBody: If the body cannot be parsed as a form.
        """
        try:
            await request.body()
            form = await request.form()
        except Exception as err:  # parser errors vary between form encodings
            raise MalformedRequestBody("unable to parse form body") from err

        try:
            token = form.get(CSRF_TOKEN_FIELD)
            token_hash = form.get(CSRF_HASH_FIELD)
        finally:
            await form.close()
        return PresentedCSRF(
            token=token if isinstance(token, str) else None,
            hash=token_hash if isinstance(token_hash, str) else None,
        )

    async def validate_for_request(
        self, request: Request, identity: str | None = None
    ) -> CSRFValidationResult:
        """Validate the CSRF pair carried by ``request``.

        Headers take precedence; form submissions without headers fall back
        to the form fields.
        """
        if not self.requires_protection(request.method, request.url.path):
            return CSRFValidationResult(valid=True)

        presented = self.extract_from_request(request)
        if not presented.complete and is_form_request(request):
            try:
                presented = await self.extract_from_form(request)
            except MalformedRequestBody:
                logger.warning(
                    "CSRF form parsing failed for %s %s",
                    request.method,
                    request.url.path,
                    exc_info=True,
                )
                return CSRFValidationResult(valid=False, error=FORM_FAILURE_MESSAGE)

        if not self.verify(presented.token, presented.hash, identity):
            return CSRFValidationResult(valid=False, error=INVALID_TOKEN_MESSAGE)
        return CSRFValidationResult(valid=True)

    def add_headers(self, response: Response, identity: str | None = None) -> Response:
        """Stamp a freshly minted pair onto ``response``."""
        pair = self.generate_token_pair(identity)
        response.headers[CSRF_TOKEN_HEADER] = pair.token
        response.headers[CSRF_HASH_HEADER] = pair.hash
        return response


def get_csrf_service() -> CSRFProtectionService:
    """Return a CSRF service configured from application settings."""
    return CSRFProtectionService(
        settings.csrf_secret,
        token_bytes=settings.csrf_token_bytes,
        exempt_prefixes=settings.csrf_exempt_prefixes,
    )
