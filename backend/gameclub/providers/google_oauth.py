from __future__ import annotations

import hmac
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any
from urllib.parse import urlencode

import requests
import structlog
from jose import JWTError, jwt

from gameclub.core.errors import (
    ConfigurationError,
    IdentityError,
    InvalidNonceError,
    TokenExchangeError,
)
from gameclub.core.settings import get_settings


logger = structlog.get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")
GOOGLE_SCOPES = "openid email profile"


@dataclass(frozen=True)
class GoogleIdentity:
    email: str | None
    email_verified: bool
    name: str | None = None
    picture: str | None = None


@dataclass
class JwksCache:
    """Google's signing keys, refetched once the cached copy is older than `ttl_seconds`.

    A token naming a key id the cached set lacks forces one early refetch, at
    most every `refetch_cooldown_seconds`, so key rotation does not lock
    sign-in out until the TTL runs out.
    """

    url: str = GOOGLE_JWKS_URL
    ttl_seconds: int = 3600
    timeout: float = 15
    keys: dict[str, Any] | None = None
    expires_at: float = 0.0
    refetch_cooldown_seconds: float = 60
    fetched_at: float | None = None
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def get(self) -> dict[str, Any]:
        if self.keys is not None and self.clock() < self.expires_at:
            return self.keys
        resp = requests.get(self.url, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict) or not isinstance(data.get("keys"), list):
            raise ValueError("Malformed JWKS document")
        # Replaced wholesale; a racing duplicate fetch is harmless.
        self.keys = data
        self.fetched_at = self.clock()
        self.expires_at = self.fetched_at + self.ttl_seconds
        return data

    def get_for_kid(self, kid: str | None) -> dict[str, Any]:
        keys = self.get()
        if not kid or any(k.get("kid") == kid for k in keys["keys"] if isinstance(k, dict)):
            return keys
        if self.fetched_at is not None and self.clock() - self.fetched_at < self.refetch_cooldown_seconds:
            return keys
        logger.info("jwks_refetch", kid=kid)
        self.invalidate()
        return self.get()

    def invalidate(self) -> None:
        self.keys = None
        self.expires_at = 0.0


@lru_cache
def get_jwks_cache() -> JwksCache:
    settings = get_settings()
    return JwksCache(ttl_seconds=settings.google_jwks_cache_seconds, timeout=settings.http_timeout_seconds)


def build_authorization_url(
    *,
    client_id: str,
    redirect_uri: str,
    state: str,
    nonce: str,
    code_challenge: str,
) -> str:
    if not client_id:
        raise ConfigurationError("Missing GOOGLE_CLIENT_ID.")
    if not redirect_uri:
        raise ConfigurationError("Missing GOOGLE_REDIRECT_URI.")
    q = urlencode(
        {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPES,
            "state": state,
            "nonce": nonce,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "prompt": "select_account",
        }
    )
    return f"{GOOGLE_AUTH_URL}?{q}"


def exchange_code(
    *,
    client_id: str,
    client_secret: str,
    code: str,
    redirect_uri: str,
    code_verifier: str,
    nonce: str,
    jwks: JwksCache,
    timeout: float = 15,
) -> GoogleIdentity:
    if not client_id or not client_secret:
        raise ConfigurationError("Missing Google OAuth client credentials.")

    try:
        resp = requests.post(
            GOOGLE_TOKEN_URL,
            headers={"Accept": "application/json"},
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise TokenExchangeError("Google token endpoint unreachable") from e

    if not resp.ok:
        raise TokenExchangeError(f"Google token exchange failed: HTTP {resp.status_code}")
    try:
        data = resp.json()
    except ValueError as e:
        raise TokenExchangeError("Google token response is not JSON") from e
    id_token = data.get("id_token") if isinstance(data, dict) else None
    if not id_token:
        raise TokenExchangeError("Missing id_token in token response.")

    claims = verify_id_token(
        id_token,
        client_id=client_id,
        nonce=nonce,
        jwks=jwks,
        access_token=data.get("access_token"),
    )
    verified = claims.get("email_verified")
    return GoogleIdentity(
        email=claims.get("email") if isinstance(claims.get("email"), str) else None,
        email_verified=verified is True or verified == "true",
        name=claims.get("name") if isinstance(claims.get("name"), str) else None,
        picture=claims.get("picture") if isinstance(claims.get("picture"), str) else None,
    )


def verify_id_token(
    id_token: str,
    *,
    client_id: str,
    nonce: str,
    jwks: JwksCache,
    access_token: str | None = None,
) -> dict[str, Any]:
    try:
        kid = jwt.get_unverified_header(id_token).get("kid")
    except JWTError as e:
        logger.warning("id_token_rejected", reason=type(e).__name__)
        raise IdentityError("ID token header unreadable") from e

    try:
        keys = jwks.get_for_kid(kid)
    except (requests.RequestException, ValueError) as e:
        raise TokenExchangeError("Google signing keys unavailable") from e

    try:
        claims = jwt.decode(
            id_token,
            keys,
            algorithms=["RS256"],
            audience=client_id,
            issuer=list(GOOGLE_ISSUERS),
            access_token=access_token,
            options={"verify_at_hash": access_token is not None},
        )
    except JWTError as e:
        logger.warning("id_token_rejected", reason=type(e).__name__)
        raise IdentityError("ID token verification failed") from e

    # Only trusted claims get this far.
    claimed = claims.get("nonce")
    if not isinstance(claimed, str) or not hmac.compare_digest(claimed.encode("utf-8"), nonce.encode("utf-8")):
        raise InvalidNonceError("Invalid nonce.")
    return claims
