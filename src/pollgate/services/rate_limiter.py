"""Fixed-window rate limiting keyed by route class and client identity.

The in-memory store is single-process. It is reached only through the
`RateLimitStore` protocol so a shared backend can replace it without
touching the request pipeline.

Windows are fixed, not sliding: a burst straddling two windows can admit up
to ``2 * limit`` requests in quick succession.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from threading import Lock
from typing import Final, Protocol

from starlette.requests import Request

from pollgate.core.settings import Settings, settings

logger = logging.getLogger(__name__)

Clock = Callable[[], int]

ROUTE_AUTH: Final[str] = "auth"
ROUTE_CREATE_POLL: Final[str] = "create_poll"
ROUTE_VOTE: Final[str] = "vote"
ROUTE_GENERAL: Final[str] = "general"

UNKNOWN_CLIENT: Final[str] = "unknown"

_STATE_CHANGING: Final[frozenset[str]] = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_AUTH_PREFIXES: Final[tuple[str, ...]] = ("/api/auth/", "/auth/")
_CREATE_POLL_PATHS: Final[frozenset[str]] = frozenset({"/api/polls", "/polls", "/polls/create"})
_VOTE_PATH: Final[re.Pattern[str]] = re.compile(r"^(?:/api)?/polls/[^/]+/vote/?$")

_MESSAGES: Final[dict[str, str]] = {
    ROUTE_AUTH: "Too many authentication attempts. Please try again in {window}.",
    ROUTE_CREATE_POLL: "Too many polls created. Please try again in {window}.",
    ROUTE_VOTE: "Too many votes submitted. Please try again in {window}.",
    ROUTE_GENERAL: "Too many requests. Please try again later.",
}


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota applied to one route class."""

    limit: int
    window_ms: int
    message: str


@dataclass
class RateLimitEntry:
    """Counter for one ``route-class:identity`` key."""

    count: int
    reset_time: int


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single `check` call."""

    allowed: bool
    remaining: int
    reset_time: int


class RateLimitStore(Protocol):
    """Storage contract for rate limit counters."""

    def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult: ...

    def sweep(self) -> int: ...

    def reset(self, key: str) -> None: ...

    def clear(self) -> None: ...


class InMemoryRateLimitStore:
    """Process-local fixed-window counters guarded by a single lock."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or now_ms
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = Lock()

    def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        """Count one request against ``key`` and report whether it may proceed.

        Rejected requests do not consume budget. An expired entry is replaced
        by a new window rather than incremented.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now > entry.reset_time:
                entry = RateLimitEntry(count=1, reset_time=now + window_ms)
                self._entries[key] = entry
                return RateLimitResult(
                    allowed=True, remaining=max(0, limit - 1), reset_time=entry.reset_time
                )

            if entry.count >= limit:
                return RateLimitResult(allowed=False, remaining=0, reset_time=entry.reset_time)

            entry.count += 1
            return RateLimitResult(
                allowed=True, remaining=limit - entry.count, reset_time=entry.reset_time
            )

    def sweep(self) -> int:
        """Drop every entry whose window has passed; return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.reset_time]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def peek(self, key: str) -> RateLimitEntry | None:
        """Return a copy of the entry for ``key`` without counting a request."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return RateLimitEntry(count=entry.count, reset_time=entry.reset_time)

    def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RateLimitSweeper:
    """Background task that periodically sweeps expired entries from a store."""

    def __init__(self, store: RateLimitStore, interval_seconds: float | None = None) -> None:
        self.store = store
        self.interval = max(
            0.01,
            float(
                interval_seconds
                if interval_seconds is not None
                else settings.rate_limit_sweep_interval_seconds
            ),
        )
        self._task: asyncio.Task[None] | None = None
        self._stopping: asyncio.Event | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep loop if it is not already running."""
        if self._task is None or self._task.done():
            # Bound to the running loop; each lifespan may run on a new one.
            self._stopping = asyncio.Event()
            self._task = asyncio.create_task(self._run(self._stopping))
            logger.info("Rate limit sweeper started (interval %.1fs)", self.interval)

    async def stop(self) -> None:
        """Stop the sweep loop and wait for it to finish."""
        if self._task is None:
            return

        if self._stopping is not None:
            self._stopping.set()
        await self._task
        self._task = None
        logger.info("Rate limit sweeper stopped")

    async def _run(self, stopping: asyncio.Event) -> None:
        while not stopping.is_set():
            try:
                await asyncio.wait_for(stopping.wait(), timeout=self.interval)
            except TimeoutError:
                self._sweep_once()

    def _sweep_once(self) -> None:
        try:
            removed = self.store.sweep()
        except Exception as e:
            logger.error("Rate limit sweep failed: %s", e, exc_info=True)
            return
        logger.debug("Rate limit sweep removed %d expired entries", removed)


def _describe_window(window_ms: int) -> str:
    minutes = max(1, round(window_ms / 60_000))
    if minutes % 60 == 0:
        hours = minutes // 60
        return "1 hour" if hours == 1 else f"{hours} hours"
    return "1 minute" if minutes == 1 else f"{minutes} minutes"


def build_rate_limits(config: Settings | None = None) -> dict[str, RateLimitConfig]:
    """Return the per-route-class quotas described by ``config``."""
    config = config or settings
    limits: dict[str, RateLimitConfig] = {}
    for route_class, (limit, window_ms) in config.rate_limit_windows.items():
        message = _MESSAGES[route_class].format(window=_describe_window(window_ms))
        limits[route_class] = RateLimitConfig(limit=limit, window_ms=window_ms, message=message)
    return limits


def classify_route(method: str, path: str) -> str:
    """Return the route class whose quota applies to ``method path``."""
    method = method.upper()
    if method in _STATE_CHANGING and path.startswith(_AUTH_PREFIXES):
        return ROUTE_AUTH
    if method == "POST":
        if path.rstrip("/") in _CREATE_POLL_PATHS:
            return ROUTE_CREATE_POLL
        if _VOTE_PATH.match(path):
            return ROUTE_VOTE
    return ROUTE_GENERAL


def get_client_id(request: Request, user_id: str | None = None) -> str:
    """Derive the rate limit identity for ``request``.

    Authenticated callers are keyed by user id. Anonymous callers are keyed
    by the first ``X-Forwarded-For`` hop, then ``X-Real-IP``; both headers are
    client-controlled, so this deters abuse but does not resist spoofing.
    """
    if user_id:
        return f"user:{user_id}"

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return f"ip:{first_hop}"

    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return f"ip:{real_ip.strip()}"

    return UNKNOWN_CLIENT


def retry_after_seconds(reset_time: int, now: int) -> int:
    """Return whole seconds until ``reset_time`` (never negative)."""
    return max(0, math.ceil((reset_time - now) / 1000))


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of checking one request against its route class quota."""

    route_class: str
    client_id: str
    key: str
    config: RateLimitConfig
    result: RateLimitResult

    @property
    def allowed(self) -> bool:
        return self.result.allowed

    def headers(self) -> dict[str, str]:
        """Return the ``X-RateLimit-*`` headers describing this decision."""
        return {
            "X-RateLimit-Limit": str(self.config.limit),
            "X-RateLimit-Remaining": str(self.result.remaining),
            "X-RateLimit-Reset": str(self.result.reset_time),
        }


class RateLimiter:
    """Applies per-route-class quotas to requests using a `RateLimitStore`."""

    def __init__(
        self,
        store: RateLimitStore | None = None,
        limits: Mapping[str, RateLimitConfig] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._clock = clock or now_ms
        self.store: RateLimitStore = store or InMemoryRateLimitStore(clock=self._clock)
        self.limits: dict[str, RateLimitConfig] = dict(limits or build_rate_limits())

    def now(self) -> int:
        return self._clock()

    def check_request(self, request: Request, user_id: str | None = None) -> RateLimitDecision:
        """Classify ``request`` and count it against ``route-class:identity``."""
        route_class = classify_route(request.method, request.url.path)
        config = self.limits.get(route_class) or self.limits[ROUTE_GENERAL]
        client_id = get_client_id(request, user_id)
        key = f"{route_class}:{client_id}"
        result = self.store.check(key, config.limit, config.window_ms)
        return RateLimitDecision(
            route_class=route_class,
            client_id=client_id,
            key=key,
            config=config,
            result=result,
        )


def get_rate_limiter() -> RateLimiter:
    """Return a rate limiter with an in-memory store and configured quotas."""
    return RateLimiter()
