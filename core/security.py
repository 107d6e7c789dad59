"""
ycmbridge security module

Shared-secret request authentication for the ycmd HTTP API:
- Secret generation (fresh per daemon start)
- HMAC-SHA256 request signing over method, path and body
- Response verification against the header-carried MAC
- Unicode escaping of request bodies before signing and sending

ycmd rejects any request whose MAC does not match, and signs every response
it sends, so both directions go through this module.
"""

import base64
import hashlib
import hmac
import secrets

# ---------------------------------------------------------------------------
# 1. Secrets
# ---------------------------------------------------------------------------

SECRET_LENGTH = 16


def generate_secret() -> bytes:
    """Generate a new random shared secret for one daemon session."""
    return secrets.token_bytes(SECRET_LENGTH)


def encode_secret(secret: bytes) -> str:
    """Base64 form of the secret, as written to the daemon options file."""
    return base64.b64encode(secret).decode("ascii")


# ---------------------------------------------------------------------------
# 2. Body escaping
# ---------------------------------------------------------------------------


def escape_unicode(text: str) -> str:
    """Replace every code point >= 0x80 with a ``\\uXXXX`` escape.

    Astral code points are written as UTF-16 surrogate pairs, which is what a
    JSON decoder expects. The result is pure ASCII.
    """
    out = []
    for ch in text:
        code = ord(ch)
        if code < 0x80:
            out.append(ch)
        elif code <= 0xFFFF:
            out.append(f"\\u{code:04x}")
        else:
            code -= 0x10000
            out.append(f"\\u{0xD800 + (code >> 10):04x}")
            out.append(f"\\u{0xDC00 + (code & 0x3FF):04x}")
    return "".join(out)


# ---------------------------------------------------------------------------
# 3. HMAC signing
# ---------------------------------------------------------------------------


def _as_bytes(data: str | bytes) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


def _digest(secret: bytes, data: str | bytes) -> bytes:
    return hmac.new(secret, _as_bytes(data), hashlib.sha256).digest()


def compute_hmac(secret: bytes, data: str | bytes) -> str:
    """Base64 HMAC-SHA256 of a single payload."""
    return base64.b64encode(_digest(secret, data)).decode("ascii")


def sign(secret: bytes, method: str, path: str, body: str | bytes) -> str:
    """Sign a request.

    mac = HMAC(secret, HMAC(method) ++ HMAC(path) ++ HMAC(body)), where the
    inner digests are raw bytes and only the outer digest is base64-encoded.
    """
    joined = _digest(secret, method) + _digest(secret, path) + _digest(secret, body)
    return compute_hmac(secret, joined)


def verify(secret: bytes, body: str | bytes, mac: object) -> bool:
    """Check a response body against its header-carried MAC.

    Never raises: a missing or malformed MAC is simply a mismatch. The
    expected digest is always computed and compared in constant time.
    """
    expected = compute_hmac(secret, body).encode("ascii")
    well_formed = isinstance(mac, str) and bool(mac)
    candidate = mac.encode("utf-8", "replace") if isinstance(mac, str) else b""
    matches = hmac.compare_digest(expected, candidate)
    return matches and well_formed


class RequestSigner:
    """Signs outgoing requests and verifies incoming responses for one session."""

    def __init__(self, secret: bytes):
        self._secret = secret

    @property
    def secret(self) -> bytes:
        return self._secret

    def sign(self, method: str, path: str, body: str | bytes = b"") -> str:
        return sign(self._secret, method.upper(), path, body)

    def verify(self, body: str | bytes, mac: object) -> bool:
        return verify(self._secret, body, mac)
