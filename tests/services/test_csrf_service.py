# tests/services/test_csrf_service.py
"""Tests for the CSRF protection service."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch
from urllib.parse import urlencode

import pytest
from starlette.requests import Request
from starlette.responses import Response

from pollgate.services.csrf import (
    FORM_FAILURE_MESSAGE,
    INVALID_TOKEN_MESSAGE,
    CSRFProtectionService,
)


def _make_request(
    method: str,
    path: str,
    headers: dict[str, str] | None = None,
    body: bytes = b"",
) -> Request:
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in (headers or {}).items()
    ]
    sent = False

    async def receive() -> dict[str, object]:
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "query_string": b"",
        "headers": raw_headers,
        "scheme": "http",
        "server": ("test", 80),
        "client": ("127.0.0.1", 12345),
    }
    return Request(scope, receive)


def _flip_last(value: str) -> str:
    return value[:-1] + ("0" if value[-1] != "0" else "1")


class TestVerify:
    """Test pair round-trips and tamper sensitivity."""

    def test_round_trip_for_identity(self, csrf_service: CSRFProtectionService):
        pair = csrf_service.generate_token_pair("42")
        assert csrf_service.verify(pair.token, pair.hash, "42")

    def test_round_trip_anonymous(self, csrf_service: CSRFProtectionService):
        pair = csrf_service.generate_token_pair()
        assert csrf_service.verify(pair.token, pair.hash)
        assert csrf_service.verify(pair.token, pair.hash, "anonymous")

    def test_tampered_token_fails(self, csrf_service: CSRFProtectionService):
        pair = csrf_service.generate_token_pair("42")
        assert not csrf_service.verify(_flip_last(pair.token), pair.hash, "42")

    def test_tampered_hash_fails(self, csrf_service: CSRFProtectionService):
        pair = csrf_service.generate_token_pair("42")
        assert not csrf_service.verify(pair.token, _flip_last(pair.hash), "42")

    def test_other_identity_fails(self, csrf_service: CSRFProtectionService):
        pair = csrf_service.generate_token_pair("42")
        assert not csrf_service.verify(pair.token, pair.hash, "43")
        assert not csrf_service.verify(pair.token, pair.hash, None)

    def test_other_secret_fails(self, csrf_service: CSRFProtectionService):
        pair = csrf_service.generate_token_pair("42")
        other = CSRFProtectionService("another-secret")
        assert not other.verify(pair.token, pair.hash, "42")

    @pytest.mark.parametrize(
        ("token", "token_hash"), [("", "x"), ("x", ""), (None, "x"), ("x", None)]
    )
    def test_missing_input_is_false(self, csrf_service, token, token_hash):
        assert csrf_service.verify(token, token_hash) is False

    def test_earlier_pairs_stay_valid(self, csrf_service: CSRFProtectionService):
        pairs = [csrf_service.generate_token_pair("42") for _ in range(5)]
        assert all(csrf_service.verify(p.token, p.hash, "42") for p in pairs)
        assert len({p.token for p in pairs}) == 5


class TestRequiresProtection:
    """Test which requests need a CSRF pair."""

    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "get"])
    @pytest.mark.parametrize("path", ["/", "/polls", "/api/webhooks/x", "/api/polls/1/vote"])
    def test_read_only_methods_never_protected(self, csrf_service, method, path):
        assert not csrf_service.requires_protection(method, path)

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE", "post"])
    def test_state_changing_methods_protected(self, csrf_service, method):
        assert csrf_service.requires_protection(method, "/polls")

    @pytest.mark.parametrize(
        "path", ["/api/webhooks/x", "/api/webhooks/stripe/events", "/api/auth/callback/github"]
    )
    def test_exempt_paths(self, csrf_service, path):
        assert not csrf_service.requires_protection("POST", path)


class TestExtraction:
    """Test token carriers."""

    def test_headers_carry_pair(self, csrf_service):
        request = _make_request("POST", "/polls", {"X-CSRF-Token": "t", "X-CSRF-Hash": "h"})
        presented = csrf_service.extract_from_request(request)
        assert (presented.token, presented.hash) == ("t", "h")

    def test_header_names_case_insensitive(self, csrf_service):
        request = _make_request("POST", "/polls", {"x-csrf-token": "t", "X-Csrf-Hash": "h"})
        assert csrf_service.extract_from_request(request).complete

    def test_partial_headers_yield_nothing(self, csrf_service):
        request = _make_request("POST", "/polls", {"X-CSRF-Token": "t"})
        presented = csrf_service.extract_from_request(request)
        assert presented.token is None and presented.hash is None

    @pytest.mark.asyncio
    async def test_form_fields_carry_pair(self, csrf_service):
        body = urlencode({"_csrf_token": "t", "_csrf_hash": "h", "title": "x"}).encode()
        request = _make_request(
            "POST", "/polls", {"content-type": "application/x-www-form-urlencoded"}, body
        )
        presented = await csrf_service.extract_from_form(request)
        assert (presented.token, presented.hash) == ("t", "h")


class TestValidateForRequest:
    """Test the request-level validation entry point."""

    @pytest.mark.asyncio
    async def test_unprotected_request_is_valid(self, csrf_service):
        result = await csrf_service.validate_for_request(_make_request("GET", "/polls"))
        assert result.valid and result.error is None

    @pytest.mark.asyncio
    async def test_json_request_with_valid_headers(self, csrf_service):
        pair = csrf_service.generate_token_pair("42")
        request = _make_request(
            "POST",
            "/api/polls",
            {
                "content-type": "application/json",
                "X-CSRF-Token": pair.token,
                "X-CSRF-Hash": pair.hash,
            },
            b"{}",
        )
        result = await csrf_service.validate_for_request(request, "42")
        assert result.valid

    @pytest.mark.asyncio
    async def test_json_request_without_headers(self, csrf_service):
        request = _make_request("POST", "/api/polls", {"content-type": "application/json"}, b"{}")
        result = await csrf_service.validate_for_request(request)
        assert not result.valid
        assert result.error == INVALID_TOKEN_MESSAGE
        assert "refresh" in result.error

    @pytest.mark.asyncio
    async def test_urlencoded_form_with_fields(self, csrf_service):
        pair = csrf_service.generate_token_pair("42")
        body = urlencode({"_csrf_token": pair.token, "_csrf_hash": pair.hash}).encode()
        request = _make_request(
            "POST", "/polls", {"content-type": "application/x-www-form-urlencoded"}, body
        )
        result = await csrf_service.validate_for_request(request, "42")
        assert result.valid
        assert await request.body() == body

    @pytest.mark.asyncio
    async def test_multipart_form_with_fields(self, csrf_service):
        pair = csrf_service.generate_token_pair()
        boundary = "pollgateboundary"
        body = (
            f"--{boundary}\r\n"
            'Content-Disposition: form-data; name="_csrf_token"\r\n\r\n'
            f"{pair.token}\r\n"
            f"--{boundary}\r\n"
            'Content-Disposition: form-data; name="_csrf_hash"\r\n\r\n'
            f"{pair.hash}\r\n"
            f"--{boundary}--\r\n"
        ).encode()
        request = _make_request(
            "POST",
            "/polls",
            {"content-type": f"multipart/form-data; boundary={boundary}"},
            body,
        )
        result = await csrf_service.validate_for_request(request)
        assert result.valid

    @pytest.mark.asyncio
    async def test_multipart_uploads_closed_after_read(self, csrf_service):
        pair = csrf_service.generate_token_pair()
        boundary = "pollgateboundary"
        body = (
            f"--{boundary}\r\n"
            'Content-Disposition: form-data; name="_csrf_token"\r\n\r\n'
            f"{pair.token}\r\n"
            f"--{boundary}\r\n"
            'Content-Disposition: form-data; name="_csrf_hash"\r\n\r\n'
            f"{pair.hash}\r\n"
            f"--{boundary}\r\n"
            'Content-Disposition: form-data; name="poster"; filename="poster.txt"\r\n'
            "Content-Type: text/plain\r\n\r\n"
            "lunch options\r\n"
            f"--{boundary}--\r\n"
        ).encode()
        request = _make_request(
            "POST",
            "/polls",
            {"content-type": f"multipart/form-data; boundary={boundary}"},
            body,
        )
        result = await csrf_service.validate_for_request(request)
        assert result.valid
        upload = (await request.form())["poster"]
        assert not isinstance(upload, str)
        assert upload.file.closed

    @pytest.mark.asyncio
    async def test_form_without_fields(self, csrf_service):
        request = _make_request(
            "POST", "/polls", {"content-type": "application/x-www-form-urlencoded"}, b"title=x"
        )
        result = await csrf_service.validate_for_request(request)
        assert not result.valid
        assert result.error == INVALID_TOKEN_MESSAGE

    @pytest.mark.asyncio
    async def test_headers_take_precedence_over_form(self, csrf_service):
        pair = csrf_service.generate_token_pair()
        request = _make_request(
            "POST",
            "/polls",
            {
                "content-type": "application/x-www-form-urlencoded",
                "X-CSRF-Token": pair.token,
                "X-CSRF-Hash": pair.hash,
            },
            b"_csrf_token=bogus&_csrf_hash=bogus",
        )
        with patch.object(csrf_service, "extract_from_form", new=AsyncMock()) as form_reader:
            result = await csrf_service.validate_for_request(request)
        assert result.valid
        form_reader.assert_not_called()

    @pytest.mark.asyncio
    async def test_malformed_form_is_rejected_not_raised(self, csrf_service):
        request = _make_request(
            "POST", "/polls", {"content-type": "multipart/form-data; boundary=x"}, b"garbage"
        )
        with patch.object(Request, "form", new=AsyncMock(side_effect=ValueError("bad body"))):
            result = await csrf_service.validate_for_request(request)
        assert not result.valid
        assert result.error == FORM_FAILURE_MESSAGE
        assert "bad body" not in result.error


def test_add_headers_stamps_fresh_pair(csrf_service: CSRFProtectionService) -> None:
    first = csrf_service.add_headers(Response(), "42")
    second = csrf_service.add_headers(Response(), "42")
    token, token_hash = first.headers["X-CSRF-Token"], first.headers["X-CSRF-Hash"]
    assert csrf_service.verify(token, token_hash, "42")
    assert second.headers["X-CSRF-Token"] != token
    assert csrf_service.verify(token, token_hash, "42")
