"""Tests for client.transport module."""

import json
from dataclasses import dataclass

import httpx
import pytest

from client.transport import DaemonTransport, encode_body
from core.config import HMAC_HEADER
from core.errors import (
    ConfirmationKind,
    ConfirmationRequiredError,
    IntegrityError,
    TransportError,
)
from core.security import compute_hmac, sign, verify

SECRET = b"fedcba9876543210"

# ---------------------------------------------------------------------------
# Mock helpers
# ---------------------------------------------------------------------------


@dataclass
class _Endpoint:
    port: int = 8765
    secret: bytes = SECRET


def _signed(status: int, body: object, secret: bytes = SECRET) -> httpx.Response:
    """Response signed the way ycmd signs it."""
    raw = json.dumps(body).encode()
    return httpx.Response(status, content=raw, headers={HMAC_HEADER: compute_hmac(secret, raw)})


def _transport(handler) -> DaemonTransport:
    return DaemonTransport(http_transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Request encoding
# ---------------------------------------------------------------------------


def test_encode_body_is_ascii_json():
    body = encode_body({"contents": "naïve \U0001F600"})
    assert body.isascii()
    assert json.loads(body) == {"contents": "naïve \U0001F600"}


class TestRequestSigning:
    async def test_post_is_signed_over_sent_bytes(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _signed(200, {"completions": []})

        transport = _transport(handler)
        result = await transport.send(_Endpoint(), "completions", {"contents": "é"})

        assert result == {"completions": []}
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/completions"
        assert request.url.port == 8765
        assert request.content == b'{"contents": "\\u00e9"}'
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["Content-Length"] == str(len(request.content))
        assert request.headers[HMAC_HEADER] == sign(SECRET, "POST", "/completions", request.content)
        await transport.aclose()

    async def test_signature_does_not_cover_unescaped_body(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _signed(200, {})

        payload = {"contents": "\u00e9t\u00e9 \U0001f600"}
        transport = _transport(handler)
        await transport.send(_Endpoint(), "completions", payload)
        await transport.aclose()

        request = seen[0]
        unescaped = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        assert request.content != unescaped
        assert request.headers[HMAC_HEADER] != sign(SECRET, "POST", "/completions", unescaped)
        assert not verify(SECRET, request.content, compute_hmac(SECRET, unescaped))
        assert verify(SECRET, request.content, compute_hmac(SECRET, request.content))

    async def test_get_is_signed_with_empty_body(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _signed(200, True)

        transport = _transport(handler)
        assert await transport.ready(_Endpoint())

        request = seen[0]
        assert request.method == "GET"
        assert request.url.path == "/ready"
        assert request.headers[HMAC_HEADER] == sign(SECRET, "GET", "/ready", b"")

    async def test_post_without_payload_sends_empty_object(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _signed(200, True)

        await _transport(handler).send(_Endpoint(), "shutdown")
        assert seen[0].content == b"{}"


# ---------------------------------------------------------------------------
# Response checks
# ---------------------------------------------------------------------------


class TestResponseVerification:
    async def test_mac_mismatch_is_integrity_error(self):
        def handler(request):
            return _signed(200, {"completions": []}, secret=b"someone-else!!!!")

        with pytest.raises(IntegrityError):
            await _transport(handler).send(_Endpoint(), "completions", {})

    async def test_missing_mac_is_integrity_error(self):
        def handler(request):
            return httpx.Response(200, json={"completions": []})

        with pytest.raises(IntegrityError):
            await _transport(handler).send(_Endpoint(), "completions", {})

    async def test_unverified_error_status(self):
        def handler(request):
            return httpx.Response(500, content=b"oops")

        with pytest.raises(TransportError) as exc_info:
            await _transport(handler).send(_Endpoint(), "completions", {})
        assert exc_info.value.status_code == 500

    async def test_verified_error_carries_daemon_message(self):
        def handler(request):
            return _signed(500, {"exception": {"TYPE": "RuntimeError"}, "message": "boom"})

        with pytest.raises(TransportError, match="boom") as exc_info:
            await _transport(handler).send(_Endpoint(), "run_completer_command", {})
        assert exc_info.value.status_code == 500

    async def test_verified_unknown_extra_conf(self):
        def handler(request):
            return _signed(500, {
                "exception": {"TYPE": "UnknownExtraConf", "extra_conf_file": "/p/.ycm_extra_conf.py"},
                "message": "Found /p/.ycm_extra_conf.py",
            })

        with pytest.raises(ConfirmationRequiredError) as exc_info:
            await _transport(handler).send(_Endpoint(), "event_notification", {})
        assert exc_info.value.kind is ConfirmationKind.UNKNOWN_EXTRA_CONF
        assert exc_info.value.extra_conf_file == "/p/.ycm_extra_conf.py"

    async def test_verified_no_extra_conf(self):
        def handler(request):
            return _signed(500, {"exception": {"TYPE": "NoExtraConfDetected"}, "message": "none"})

        with pytest.raises(ConfirmationRequiredError) as exc_info:
            await _transport(handler).send(_Endpoint(), "event_notification", {})
        assert exc_info.value.kind is ConfirmationKind.NO_EXTRA_CONF

    async def test_confirmation_embedded_in_success_body(self):
        def handler(request):
            return _signed(200, {
                "completions": [],
                "errors": [{
                    "exception": {"TYPE": "UnknownExtraConf", "extra_conf_file": "/q/.ycm_extra_conf.py"},
                    "message": "",
                }],
            })

        with pytest.raises(ConfirmationRequiredError) as exc_info:
            await _transport(handler).send(_Endpoint(), "completions", {})
        assert exc_info.value.extra_conf_file == "/q/.ycm_extra_conf.py"

    async def test_malformed_json(self):
        def handler(request):
            raw = b"{not json"
            return httpx.Response(200, content=raw, headers={HMAC_HEADER: compute_hmac(SECRET, raw)})

        with pytest.raises(TransportError, match="malformed"):
            await _transport(handler).send(_Endpoint(), "completions", {})

    async def test_empty_body_is_none(self):
        def handler(request):
            return httpx.Response(200, content=b"", headers={HMAC_HEADER: compute_hmac(SECRET, b"")})

        assert await _transport(handler).send(_Endpoint(), "event_notification", {}) is None


class TestNetworkFailures:
    async def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(TransportError, match="failed"):
            await _transport(handler).send(_Endpoint(), "completions", {})

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow")

        with pytest.raises(TransportError, match="timed out"):
            await _transport(handler).send(_Endpoint(), "completions", {})


class TestProbes:
    async def test_ready_false_on_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        assert await _transport(handler).ready(_Endpoint()) is False

    async def test_healthy(self):
        seen: list[str] = []

        def handler(request):
            seen.append(request.url.path)
            return _signed(200, True)

        assert await _transport(handler).healthy(_Endpoint()) is True
        assert seen == ["/healthy"]

    async def test_ready_false_on_bad_mac(self):
        def handler(request):
            return httpx.Response(200, json=True)

        assert await _transport(handler).ready(_Endpoint()) is False

    async def test_aclose_resets_client(self):
        transport = _transport(lambda request: _signed(200, True))
        await transport.healthy(_Endpoint())
        assert transport._client is not None
        await transport.aclose()
        assert transport._client is None
