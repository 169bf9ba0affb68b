"""Signed cookie values: ``base64url(json).base64url(hmac_sha256)``.

The format is shared by the session cookie and the pending-login cookie. A
value that does not verify is indistinguishable from an absent one.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from typing import Any

from gameclub.core.errors import ConfigurationError


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    pad = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + pad).encode("ascii"))


def random_token(nbytes: int) -> str:
    return b64url_encode(secrets.token_bytes(nbytes))


def pkce_challenge(verifier: str) -> str:
    # RFC 7636 S256
    return b64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())


def _sign(secret: str | None, payload_b64: str) -> str:
    if not secret:
        raise ConfigurationError("Missing SESSION_SECRET.")
    digest = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()
    return b64url_encode(digest)


def encode(secret: str | None, payload: Any) -> str:
    payload_b64 = b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{payload_b64}.{_sign(secret, payload_b64)}"


def decode(secret: str | None, value: str | None) -> Any | None:
    if not secret:
        raise ConfigurationError("Missing SESSION_SECRET.")
    if not value:
        return None

    payload_b64, _, signature = value.partition(".")
    if not payload_b64 or not signature:
        return None

    try:
        expected = _sign(secret, payload_b64).encode("ascii")
        provided = signature.encode("ascii")
    except UnicodeEncodeError:
        return None
    if not hmac.compare_digest(expected, provided):
        return None

    try:
        return json.loads(b64url_decode(payload_b64).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
