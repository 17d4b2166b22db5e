# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Callable, Iterator

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("CSRF_SECRET", "test-csrf-secret")

from pollgate.core.settings import Settings
from pollgate.main import create_app
from pollgate.services.csrf import CSRFProtectionService
from pollgate.services.rate_limiter import InMemoryRateLimitStore
from pollgate.services.session import create_access_token

_TEST_SETTINGS_INSTANCE = Settings()  # type: ignore[call-arg]

START_MS = 1_700_000_000_000


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Provide a Settings instance aligned with runtime configuration."""
    return _TEST_SETTINGS_INSTANCE


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def store(clock: ManualClock) -> InMemoryRateLimitStore:
    return InMemoryRateLimitStore(clock=clock)


@pytest.fixture()
def csrf_service(test_settings: Settings) -> CSRFProtectionService:
    return CSRFProtectionService(
        test_settings.csrf_secret,
        exempt_prefixes=test_settings.csrf_exempt_prefixes,
    )


def _mount_test_routes(app: FastAPI) -> None:
    """Register stand-ins for the poll routes the pipeline protects."""

    @app.post("/api/polls")
    async def create_poll() -> dict[str, bool]:
        return {"created": True}

    @app.post("/api/polls/{poll_id}/vote")
    async def vote(poll_id: str) -> dict[str, str]:
        return {"voted": poll_id}

    @app.post("/api/forms/echo")
    async def echo_form(request: Request) -> dict[str, str]:
        form = await request.form()
        return {key: str(value) for key, value in form.items()}

    @app.post("/api/webhooks/{provider}")
    async def webhook(provider: str) -> dict[str, str]:
        return {"received": provider}

    @app.get("/dashboard")
    async def dashboard(request: Request) -> dict[str, str | None]:
        return {"user_id": request.state.user_id, "client_id": request.state.client_id}

    @app.get("/polls/{poll_id}")
    async def poll_page(poll_id: str) -> dict[str, str]:
        return {"poll": poll_id}


@pytest.fixture()
def app_factory(clock: ManualClock) -> Callable[..., FastAPI]:
    """Return a builder for fresh applications sharing the manual clock."""

    def _build(config: Settings | None = None, **kwargs: object) -> FastAPI:
        app = create_app(config or _TEST_SETTINGS_INSTANCE, clock=clock, **kwargs)
        _mount_test_routes(app)
        return app

    return _build


@pytest.fixture()
def app(app_factory: Callable[..., FastAPI]) -> FastAPI:
    return app_factory()


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test", follow_redirects=False) as test_client:
        yield test_client


@pytest.fixture()
def user_id() -> str:
    return "42"


@pytest.fixture()
def auth_headers(user_id: str) -> dict[str, str]:
    """Return authorization headers for the primary test user."""
    token = create_access_token(user_id, config=_TEST_SETTINGS_INSTANCE)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def csrf_headers_for(
    csrf_service: CSRFProtectionService,
) -> Callable[[str | None], dict[str, str]]:
    """Return a helper minting CSRF headers bound to an identity."""

    def _headers(identity: str | None = None) -> dict[str, str]:
        pair = csrf_service.generate_token_pair(identity)
        return {"X-CSRF-Token": pair.token, "X-CSRF-Hash": pair.hash}

    return _headers
