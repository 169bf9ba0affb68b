"""Pending-login cookie: CSRF state, replay nonce and PKCE verifier.

Nothing is stored server-side. The browser carries the signed payload from
the login redirect to the callback, which consumes it exactly once by
clearing the cookie on every outcome.
"""

from __future__ import annotations

import hmac
import math
from dataclasses import dataclass

from gameclub.core import signing
from gameclub.core.cookies import OAUTH_COOKIE_NAME, SetCookie, cleared
from gameclub.core.errors import OAuthStateError
from gameclub.core.time import Clock, now_ms
from gameclub.providers.google_oauth import build_authorization_url


STATE_BYTES = 32
NONCE_BYTES = 32
VERIFIER_BYTES = 64


@dataclass(frozen=True)
class PendingLogin:
    state: str
    nonce: str
    code_verifier: str
    created_at: int

    def to_payload(self) -> dict:
        return {
            "state": self.state,
            "nonce": self.nonce,
            "codeVerifier": self.code_verifier,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_payload(cls, data: object) -> PendingLogin | None:
        if not isinstance(data, dict):
            return None
        state, nonce, verifier, created_at = (
            data.get("state"),
            data.get("nonce"),
            data.get("codeVerifier"),
            data.get("createdAt"),
        )
        if not all(isinstance(v, str) and v for v in (state, nonce, verifier)):
            return None
        if isinstance(created_at, bool) or not isinstance(created_at, (int, float)) or not math.isfinite(created_at):
            return None
        return cls(state=state, nonce=nonce, code_verifier=verifier, created_at=int(created_at))


@dataclass(frozen=True)
class LoginRedirect:
    authorization_url: str
    cookie: SetCookie
    pending: PendingLogin


class OAuthStateManager:
    def __init__(self, *, secret: str, ttl_seconds: int = 600, clock: Clock = now_ms) -> None:
        self._secret = secret
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def begin_login(self, *, client_id: str, redirect_uri: str) -> LoginRedirect:
        pending = PendingLogin(
            state=signing.random_token(STATE_BYTES),
            nonce=signing.random_token(NONCE_BYTES),
            code_verifier=signing.random_token(VERIFIER_BYTES),
            created_at=self._clock(),
        )
        url = build_authorization_url(
            client_id=client_id,
            redirect_uri=redirect_uri,
            state=pending.state,
            nonce=pending.nonce,
            code_challenge=signing.pkce_challenge(pending.code_verifier),
        )
        cookie = SetCookie(
            name=OAUTH_COOKIE_NAME,
            value=signing.encode(self._secret, pending.to_payload()),
            max_age=self._ttl_seconds,
        )
        return LoginRedirect(authorization_url=url, cookie=cookie, pending=pending)

    def validate_callback(self, cookie_value: str | None, returned_state: str | None) -> PendingLogin:
        if not cookie_value or not returned_state:
            raise OAuthStateError("Missing OAuth state")

        pending = PendingLogin.from_payload(signing.decode(self._secret, cookie_value))
        if pending is None:
            raise OAuthStateError("Invalid OAuth state cookie")

        if self._clock() - pending.created_at > self._ttl_seconds * 1000:
            raise OAuthStateError("OAuth state expired")

        if not hmac.compare_digest(pending.state.encode("utf-8"), returned_state.encode("utf-8")):
            raise OAuthStateError("OAuth state mismatch")

        return pending

    def clear(self) -> SetCookie:
        return cleared(OAUTH_COOKIE_NAME)
