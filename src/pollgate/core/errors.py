"""Error taxonomy for the request protection layer.

Components report expected failures through structured results; these
exceptions exist for the points where a failure has to cross a boundary
(the pipeline turning a result into an HTTP response, or a crypto backend
that cannot be used at all).
"""

from __future__ import annotations


class PollgateError(RuntimeError):
    """Base exception for request protection failures."""


class RateLimitExceeded(PollgateError):
    """Raised when a client has exhausted the quota for a route class.

    Recoverable by the caller once ``reset_time`` has passed.
    """

    def __init__(
        self, message: str, *, retry_after: int, reset_time: int, limit: int
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after
        self.reset_time = reset_time
        self.limit = limit


class CSRFValidationFailed(PollgateError):
    """Raised when a state-changing request carries no valid CSRF pair.

    The message is safe to show to end users and never mentions the secret
    or the digest algorithm.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class CryptoBackendUnavailable(PollgateError):
    """Raised when the cryptographic backend cannot produce randomness or digests."""


class MalformedRequestBody(PollgateError):
    """Raised when a form body cannot be parsed while extracting CSRF fields."""
