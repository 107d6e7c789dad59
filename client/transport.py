"""Signed HTTP transport to a running ycmd.

Every request is signed with the session secret and every response is
verified before its body is parsed. A response that fails verification is
never returned to the caller.
"""

import json
import logging
from typing import Any, Literal, Protocol
from urllib.parse import urljoin

import httpx

from core.config import DEFAULT_REQUEST_TIMEOUT, HMAC_HEADER, LOCALHOST
from core.errors import IntegrityError, TransportError
from core.logging import get_logger
from core.security import RequestSigner, escape_unicode
from client.responses import confirmation_for, decode_error, embedded_confirmation

Method = Literal["GET", "POST"]


class DaemonEndpoint(Protocol):
    """Anything that knows where a daemon listens and which secret it uses."""

    @property
    def port(self) -> int: ...

    @property
    def secret(self) -> bytes: ...


def encode_body(payload: Any) -> str:
    """Serialize a request body to ASCII-only JSON."""
    return escape_unicode(json.dumps(payload, ensure_ascii=False))


class DaemonTransport:
    """Async HTTP client for the daemon API.

    Lifecycle:
        1. Created once and shared by every session
        2. The underlying httpx client is opened on first use
        3. aclose() on shutdown
    """

    def __init__(
        self,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        host: str = LOCALHOST,
        logger: logging.Logger | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.host = host
        self.log = logger or get_logger("transport")
        self._http_transport = http_transport
        self._client: httpx.AsyncClient | None = None

    # -- Lifecycle --

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._http_transport,
                trust_env=False,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # -- Requests --

    async def send(
        self,
        session: DaemonEndpoint,
        endpoint: str,
        payload: Any = None,
        method: Method = "POST",
    ) -> Any:
        """Send one signed request and return the verified, parsed JSON reply.

        Raises:
            TransportError: network failure, timeout, or non-2xx status
            IntegrityError: the response MAC did not match
            ConfirmationRequiredError: the daemon needs an extra-config decision
        """
        signer = RequestSigner(session.secret)
        path = urljoin("/", endpoint)
        url = f"http://{self.host}:{session.port}{path}"

        headers: dict[str, str] = {}
        params = None
        content: bytes | None = None
        if method == "GET":
            params = payload
            headers[HMAC_HEADER] = signer.sign(method, path, b"")
        else:
            body = encode_body(payload if payload is not None else {})
            content = body.encode("ascii")
            headers[HMAC_HEADER] = signer.sign(method, path, content)
            headers["Content-Type"] = "application/json"
            headers["Content-Length"] = str(len(content))

        self.log.debug(f"{method} {path} (port {session.port})")
        try:
            resp = await self._get_client().request(
                method, url, params=params, content=content, headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.RequestError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        return self._read_response(signer, method, path, resp)

    def _read_response(
        self, signer: RequestSigner, method: str, path: str, resp: httpx.Response,
    ) -> Any:
        raw = resp.content
        trusted = signer.verify(raw, resp.headers.get(HMAC_HEADER))

        if not resp.is_success:
            self.log.debug(f"{method} {path}: HTTP {resp.status_code}")
            if not trusted:
                raise TransportError(
                    f"{method} {path}: HTTP {resp.status_code}", resp.status_code,
                )
            body = _parse_json(raw)
            error = decode_error(body)
            confirmation = confirmation_for(error)
            if confirmation is not None:
                raise confirmation
            raise TransportError(
                f"{method} {path}: HTTP {resp.status_code}: {error.message or error.TYPE}",
                resp.status_code,
            )

        if not trusted:
            self.log.warning(f"{method} {path}: response HMAC mismatch, discarding")
            raise IntegrityError(f"{method} {path}: HMAC check failed")

        try:
            body = json.loads(raw) if raw else None
        except ValueError as e:
            raise TransportError(f"{method} {path}: malformed JSON response") from e

        confirmation = embedded_confirmation(body)
        if confirmation is not None:
            raise confirmation
        return body

    # -- Probes --

    async def ready(self, session: DaemonEndpoint) -> bool:
        """True once the daemon answers GET /ready with a truthy body."""
        try:
            return bool(await self.send(session, "ready", method="GET"))
        except (TransportError, IntegrityError):
            return False

    async def healthy(self, session: DaemonEndpoint) -> bool:
        try:
            return bool(await self.send(session, "healthy", method="GET"))
        except (TransportError, IntegrityError):
            return False


def _parse_json(raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return None
