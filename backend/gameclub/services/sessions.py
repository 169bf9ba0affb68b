"""Stateless session cookie.

The token is the whole session: every read re-checks idle expiry, the
absolute ceiling and the token's own shape, then decides whether the
membership behind it must be re-verified and whether activity should roll
the idle deadline forward. Any change is returned as a cookie for the caller
to attach to its response; nothing is written here.

Two concurrent requests may each return a slightly different refreshed
cookie. The browser keeps the last one, and since all invariants are
re-derived from the token on every read, the worst case is a stale
``lastSeenAt``.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any

import structlog

from gameclub.core import signing
from gameclub.core.cookies import SetCookie, cleared
from gameclub.core.errors import InvalidSessionError
from gameclub.core.settings import Settings
from gameclub.core.time import Clock, now_ms
from gameclub.services.membership import ROLES, MemberInfo


logger = structlog.get_logger(__name__)

SECOND_MS = 1000
DAY_MS = 24 * 60 * 60 * SECOND_MS

_METADATA_KEYS = ("issuedAt", "lastSeenAt", "membershipCheckedAt", "absoluteExp")

MembershipLookup = Callable[[str], "MemberInfo | None"]


@dataclass(frozen=True)
class SessionPolicy:
    idle_ttl_ms: int = 45 * DAY_MS
    absolute_ttl_ms: int = 180 * DAY_MS
    membership_recheck_ms: int = 60 * 60 * SECOND_MS
    activity_touch_ms: int = 5 * 60 * SECOND_MS
    # Sessions minted before renewal metadata existed carried a fixed 7-day exp.
    legacy_ttl_ms: int = 7 * DAY_MS

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionPolicy:
        return cls(
            idle_ttl_ms=settings.session_idle_ttl_seconds * SECOND_MS,
            absolute_ttl_ms=settings.session_absolute_ttl_seconds * SECOND_MS,
            membership_recheck_ms=settings.session_membership_recheck_seconds * SECOND_MS,
            activity_touch_ms=settings.session_activity_touch_seconds * SECOND_MS,
            legacy_ttl_ms=settings.legacy_session_ttl_seconds * SECOND_MS,
        )


@dataclass(frozen=True)
class SessionToken:
    email: str
    role: str
    exp: int
    issued_at: int
    last_seen_at: int
    membership_checked_at: int
    absolute_exp: int
    name: str | None = None
    alias: str | None = None
    picture: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"email": self.email}
        for key in ("name", "alias", "picture"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        payload.update(
            role=self.role,
            exp=self.exp,
            issuedAt=self.issued_at,
            lastSeenAt=self.last_seen_at,
            membershipCheckedAt=self.membership_checked_at,
            absoluteExp=self.absolute_exp,
        )
        return payload

    def is_valid_at(self, now: int, policy: SessionPolicy) -> bool:
        return (
            now <= self.exp
            and now <= self.absolute_exp
            and now - self.last_seen_at <= policy.idle_ttl_ms
        )


@dataclass(frozen=True)
class SessionRead:
    """Outcome of reading the session cookie for one request.

    `cookie` is set when the token was refreshed or must be cleared; the
    response-composition step appends it once.
    """

    session: SessionToken | None
    cookie: SetCookie | None = None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _read_timestamp(value: Any) -> int | None:
    if not _is_number(value) or value <= 0:
        return None
    return int(value)


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _infer_legacy_issued_at(exp: int | None, now: int, policy: SessionPolicy) -> int | None:
    if exp is None:
        return None
    inferred = exp - policy.legacy_ttl_ms
    if inferred <= 0 or inferred > now:
        return None
    return inferred


def normalize_session(data: Mapping[str, Any], now: int, policy: SessionPolicy = SessionPolicy()) -> SessionToken | None:
    """Build a canonical token from a decoded payload or a new-session input.

    Missing renewal metadata is filled in: `issuedAt` from the legacy 7-day
    convention when `exp` allows it, otherwise `now`.
    """

    email = data.get("email")
    email = email.strip().lower() if isinstance(email, str) else ""
    if not email:
        return None
    role = data.get("role")
    if role not in ROLES:
        return None

    raw_exp = _read_timestamp(data.get("exp"))
    issued_at = (
        _read_timestamp(data.get("issuedAt"))
        or _infer_legacy_issued_at(raw_exp, now, policy)
        or now
    )
    absolute_exp = _read_timestamp(data.get("absoluteExp")) or issued_at + policy.absolute_ttl_ms
    last_seen_at = min(max(_read_timestamp(data.get("lastSeenAt")) or issued_at, issued_at), now)
    membership_checked_at = min(max(_read_timestamp(data.get("membershipCheckedAt")) or issued_at, issued_at), now)
    exp = min(raw_exp or last_seen_at + policy.idle_ttl_ms, absolute_exp)

    return SessionToken(
        email=email,
        role=role,
        exp=exp,
        issued_at=issued_at,
        last_seen_at=last_seen_at,
        membership_checked_at=membership_checked_at,
        absolute_exp=absolute_exp,
        name=_optional_str(data.get("name")),
        alias=_optional_str(data.get("alias")),
        picture=_optional_str(data.get("picture")),
    )


def _has_metadata(data: Mapping[str, Any]) -> bool:
    return all(_is_number(data.get(key)) for key in _METADATA_KEYS)


class SessionManager:
    def __init__(
        self,
        *,
        secret: str,
        cookie_name: str = "gc_session",
        policy: SessionPolicy = SessionPolicy(),
        clock: Clock = now_ms,
    ) -> None:
        self._secret = secret
        self.cookie_name = cookie_name
        self.policy = policy
        self._clock = clock

    def create(self, data: Mapping[str, Any] | SessionToken) -> SetCookie:
        if isinstance(data, SessionToken):
            data = data.to_payload()
        token = normalize_session(data, self._clock(), self.policy)
        if token is None:
            raise InvalidSessionError("Invalid session data.")
        return self._issue(token)

    def refresh(self, session: SessionToken, **changes: Any) -> SetCookie:
        return self.create(replace(session, **changes))

    def clear(self) -> SetCookie:
        return cleared(self.cookie_name)

    def read(self, cookies: Mapping[str, str], lookup_member: MembershipLookup) -> SessionRead:
        value = cookies.get(self.cookie_name)
        if not value:
            return SessionRead(None)

        raw = signing.decode(self._secret, value)
        if not isinstance(raw, dict):
            return self._rejected("undecodable")

        now = self._clock()
        current = normalize_session(raw, now, self.policy)
        if current is None:
            return self._rejected("malformed")
        if not current.is_valid_at(now, self.policy):
            return self._rejected("expired", email=current.email)

        reissue = not _has_metadata(raw)

        if now - current.membership_checked_at >= self.policy.membership_recheck_ms:
            try:
                member = lookup_member(current.email)
            except Exception:
                # Store unreachable: unauthenticated for this request only.
                logger.exception("session_membership_lookup_failed", email=current.email)
                return SessionRead(None)
            if member is None or member.role not in ROLES:
                return self._rejected("membership_revoked", email=current.email)
            current = replace(
                current,
                name=member.name or current.name,
                alias=member.alias,
                role=member.role,
                membership_checked_at=now,
            )
            reissue = True

        if now - current.last_seen_at >= self.policy.activity_touch_ms:
            current = replace(
                current,
                last_seen_at=now,
                exp=min(current.absolute_exp, now + self.policy.idle_ttl_ms),
            )
            reissue = True

        return SessionRead(current, self._issue(current) if reissue else None)

    def _issue(self, token: SessionToken) -> SetCookie:
        return SetCookie(
            name=self.cookie_name,
            value=signing.encode(self._secret, token.to_payload()),
            max_age=self.policy.idle_ttl_ms // SECOND_MS,
        )

    def _rejected(self, reason: str, **kw: Any) -> SessionRead:
        logger.info("session_cleared", reason=reason, **kw)
        return SessionRead(None, self.clear())
