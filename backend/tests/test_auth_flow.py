import time
from urllib.parse import parse_qs, urlparse

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwk, jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from gameclub.core import signing
from gameclub.providers import google_oauth
from gameclub.providers.google_oauth import JwksCache
from gameclub.repos.audit_logs import count_for_actor
from gameclub.repos.members import create_member, get_member_by_email


SECRET = "integration-session-secret"
CLIENT_ID = "club-client.apps.googleusercontent.com"
T0 = 1_760_000_000_000
DAY_MS = 86_400_000
MINUTE_MS = 60_000


class Clock:
    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


class Google:
    """Signs ID tokens and plays the token endpoint."""

    def __init__(self) -> None:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.private_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode()
        public_pem = key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()
        self.jwks = {"keys": [{**jwk.construct(public_pem, "RS256").to_dict(), "kid": "k1"}]}
        self.calls = []
        self.status_code = 200
        self.claims = {}
        self.nonce = None

    def id_token(self, nonce: str) -> str:
        now = int(time.time())
        claims = {
            "iss": "https://accounts.google.com",
            "aud": CLIENT_ID,
            "sub": "42",
            "email": "ann@example.com",
            "email_verified": True,
            "name": "Ann Google",
            "picture": "https://lh3.googleusercontent.com/a/ann",
            "nonce": nonce,
            "iat": now,
            "exp": now + 600,
        }
        claims.update(self.claims)
        return jwt.encode(claims, self.private_pem, algorithm="RS256", headers={"kid": "k1"})

    def post(self, url, **kw):
        self.calls.append(kw["data"])
        google = self

        class Resp:
            status_code = google.status_code
            ok = google.status_code < 400

            def json(self):
                return {"id_token": google.id_token(google.nonce)}

        return Resp()


@pytest.fixture(scope="module")
def google_keys():
    return Google()


@pytest.fixture
def club(monkeypatch, google_keys):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("SESSION_SECRET", SECRET)
    monkeypatch.setenv("GOOGLE_CLIENT_ID", CLIENT_ID)
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "client-secret")
    monkeypatch.setenv("GOOGLE_REDIRECT_URI", "http://testserver/api/auth/callback")
    monkeypatch.setenv("ADMIN_EMAILS", "boss@example.com")
    monkeypatch.setenv("APP_ENV", "test")

    from gameclub.core.settings import get_settings

    get_settings.cache_clear()

    from gameclub.api.deps import get_oauth_state_manager, get_session_manager
    from gameclub.db.base import Base
    from gameclub.db.session import get_db
    from gameclub.main import create_app
    from gameclub.services.oauth_state import OAuthStateManager
    from gameclub.services.sessions import SessionManager

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    google_keys.calls = []
    google_keys.status_code = 200
    google_keys.claims = {}
    google_keys.nonce = None
    monkeypatch.setattr(google_oauth.requests, "post", google_keys.post)

    clock = Clock(T0)
    app = create_app()

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[google_oauth.get_jwks_cache] = lambda: JwksCache(
        keys=google_keys.jwks, expires_at=float("inf")
    )
    app.dependency_overrides[get_session_manager] = lambda: SessionManager(secret=SECRET, clock=clock)
    app.dependency_overrides[get_oauth_state_manager] = lambda: OAuthStateManager(
        secret=SECRET, ttl_seconds=600, clock=clock
    )

    class Club:
        pass

    c = Club()
    c.app = app
    c.client = TestClient(app, follow_redirects=False)
    c.clock = clock
    c.google = google_keys
    c.db = TestingSessionLocal
    yield c
    get_settings.cache_clear()


def _set_cookies(r) -> dict[str, str]:
    out = {}
    for header in r.headers.get_list("set-cookie"):
        name = header.split("=", 1)[0]
        out[name] = header.lower()
    return out


def _login(club) -> dict[str, str]:
    r = club.client.get("/api/auth/login")
    assert r.status_code == 302
    q = {k: v[0] for k, v in parse_qs(urlparse(r.headers["location"]).query).items()}
    club.google.nonce = q["nonce"]
    return q


def _sign_in(club):
    q = _login(club)
    return club.client.get("/api/auth/callback", params={"code": "auth-code", "state": q["state"]})


def _add_member(club, email="ann@example.com", **kw):
    db = club.db()
    try:
        return create_member(db, email=email, **kw)
    finally:
        db.close()


def test_login_redirects_to_google_with_pending_cookie(club):
    r = club.client.get("/api/auth/login")
    assert r.status_code == 302
    assert r.headers["location"].startswith(google_oauth.GOOGLE_AUTH_URL)

    cookie = _set_cookies(r)["gc_oauth"]
    assert "httponly" in cookie
    assert "samesite=lax" in cookie
    assert "path=/" in cookie
    assert "max-age=600" in cookie
    assert "; secure" not in cookie


def test_callback_signs_member_in(club):
    _add_member(club, role="admin")
    q = _login(club)
    club.clock.now = T0 + 5_000
    r = club.client.get("/api/auth/callback", params={"code": "auth-code", "state": q["state"]})

    assert r.status_code == 302
    assert r.headers["location"] == "/"
    cookies = _set_cookies(r)
    assert "max-age=3888000" in cookies["gc_session"]
    assert "max-age=0" in cookies["gc_oauth"]

    payload = signing.decode(SECRET, club.client.cookies.get("gc_session"))
    assert payload["email"] == "ann@example.com"
    assert payload["role"] == "admin"
    assert payload["name"] == "Ann Google"
    t1 = T0 + 5_000
    assert payload["issuedAt"] == t1
    assert payload["lastSeenAt"] == t1
    assert payload["membershipCheckedAt"] == t1
    assert payload["exp"] == t1 + 45 * DAY_MS
    assert payload["absoluteExp"] == t1 + 180 * DAY_MS

    # The code exchange carried the PKCE verifier from the pending cookie.
    assert club.google.calls[0]["code_verifier"]

    db = club.db()
    try:
        row = get_member_by_email(db, "ann@example.com")
        assert row.name == "Ann Google"
        assert row.picture == "https://lh3.googleusercontent.com/a/ann"
    finally:
        db.close()

    me = club.client.get("/api/me")
    assert me.status_code == 200
    assert me.json() == {
        "email": "ann@example.com",
        "name": "Ann Google",
        "alias": None,
        "role": "admin",
        "picture": "https://lh3.googleusercontent.com/a/ann",
    }


def test_stored_name_is_kept_over_google_name(club):
    _add_member(club, name="Ann of the Club")
    _sign_in(club)
    assert club.client.get("/api/me").json()["name"] == "Ann of the Club"


def test_callback_with_state_mismatch_never_exchanges_code(club):
    _add_member(club)
    _login(club)
    r = club.client.get("/api/auth/callback", params={"code": "auth-code", "state": "forged"})

    assert r.status_code == 400
    assert r.text == "Invalid OAuth state."
    assert club.google.calls == []
    assert "max-age=0" in _set_cookies(r)["gc_oauth"]
    assert "gc_session" not in _set_cookies(r)


def test_callback_after_pending_ttl_is_rejected(club):
    _add_member(club)
    q = _login(club)
    club.clock.now = T0 + 601_000
    r = club.client.get("/api/auth/callback", params={"code": "auth-code", "state": q["state"]})
    assert r.status_code == 400
    assert club.google.calls == []


def test_callback_without_pending_cookie_is_rejected(club):
    r = club.client.get("/api/auth/callback", params={"code": "auth-code", "state": "anything"})
    assert r.status_code == 400
    assert r.text == "Invalid OAuth state."


def test_pending_cookie_is_single_use(club):
    _add_member(club)
    q = _login(club)
    callback = {"code": "auth-code", "state": q["state"]}
    assert club.client.get("/api/auth/callback", params=callback).status_code == 302
    assert club.client.cookies.get("gc_oauth") is None

    r = club.client.get("/api/auth/callback", params=callback)
    assert r.status_code == 400
    assert len(club.google.calls) == 1


def test_callback_reports_provider_error(club):
    r = club.client.get("/api/auth/callback", params={"error": "access_denied\r\nSet-Cookie: x=y"})
    assert r.status_code == 400
    assert r.text.startswith("OAuth error: access_denied")
    assert "\n" not in r.text
    assert "max-age=0" in _set_cookies(r)["gc_oauth"]


def test_callback_requires_code_and_state(club):
    _login(club)
    r = club.client.get("/api/auth/callback", params={"state": "s"})
    assert r.status_code == 400
    assert r.text == "Missing OAuth parameters."


def test_non_member_is_sent_to_denied_page(club):
    club.google.claims = {"email": "stranger@example.com"}
    r = _sign_in(club)
    assert r.status_code == 302
    assert r.headers["location"] == "/auth/denied"
    assert "gc_session" not in _set_cookies(r)


def test_unverified_email_is_refused(club):
    _add_member(club)
    club.google.claims = {"email_verified": False}
    r = _sign_in(club)
    assert r.status_code == 403
    assert r.text == "Email not verified."
    assert "gc_session" not in _set_cookies(r)


def test_token_exchange_failure_is_generic(club):
    _add_member(club)
    club.google.status_code = 500
    r = _sign_in(club)
    assert r.status_code == 500
    assert r.text == "Authentication failed."
    assert "gc_session" not in _set_cookies(r)
    assert "max-age=0" in _set_cookies(r)["gc_oauth"]


def test_nonce_mismatch_is_refused(club):
    _add_member(club)
    club.google.claims = {"nonce": "from-another-login"}
    r = _sign_in(club)
    assert r.status_code == 403
    assert r.text == "Authentication failed."


def test_allowlisted_admin_without_row(club):
    club.google.claims = {"email": "Boss@Example.com"}
    r = _sign_in(club)
    assert r.status_code == 302
    assert club.client.get("/api/me").json()["role"] == "admin"


def test_me_requires_session(club):
    r = club.client.get("/api/me")
    assert r.status_code == 401
    assert r.json()["detail"] == "Authentication required."
    assert "gc_session" not in _set_cookies(r)


def test_garbage_session_cookie_is_cleared(club):
    r = club.client.get("/api/me", headers={"Cookie": "gc_session=not.valid"})
    assert r.status_code == 401
    assert "max-age=0" in _set_cookies(r)["gc_session"]


def test_activity_refresh_is_appended_by_middleware(club):
    _add_member(club)
    _sign_in(club)

    club.clock.now = T0 + 4 * MINUTE_MS
    r = club.client.get("/api/me")
    assert r.status_code == 200
    assert "gc_session" not in _set_cookies(r)

    club.clock.now = T0 + 10 * MINUTE_MS
    r = club.client.get("/api/me")
    assert r.status_code == 200
    assert len(r.headers.get_list("set-cookie")) == 1
    payload = signing.decode(SECRET, club.client.cookies.get("gc_session"))
    assert payload["lastSeenAt"] == T0 + 10 * MINUTE_MS
    assert payload["issuedAt"] == T0


def test_revoked_member_loses_session_at_recheck(club):
    _add_member(club)
    _sign_in(club)

    db = club.db()
    try:
        get_member_by_email(db, "ann@example.com").active = False
        db.commit()
    finally:
        db.close()

    club.clock.now = T0 + 30 * MINUTE_MS
    assert club.client.get("/api/me").status_code == 200

    club.clock.now = T0 + 61 * MINUTE_MS
    r = club.client.get("/api/me")
    assert r.status_code == 401
    assert "max-age=0" in _set_cookies(r)["gc_session"]


def test_session_expires_after_idle_ttl(club):
    _add_member(club)
    _sign_in(club)
    club.clock.now = T0 + 46 * DAY_MS
    assert club.client.get("/api/me").status_code == 401


def test_update_alias(club):
    _add_member(club)
    _sign_in(club)

    club.clock.now = T0 + 10 * MINUTE_MS
    r = club.client.patch("/api/me", json={"alias": "  Ace  "})
    assert r.status_code == 204
    # Only the handler's cookie; the queued refresh is dropped.
    assert len([h for h in r.headers.get_list("set-cookie") if h.startswith("gc_session=")]) == 1
    assert signing.decode(SECRET, club.client.cookies.get("gc_session"))["alias"] == "Ace"
    assert club.client.get("/api/me").json()["alias"] == "Ace"

    db = club.db()
    try:
        assert get_member_by_email(db, "ann@example.com").alias == "Ace"
        assert count_for_actor(db, actor_email="ann@example.com") == 1
    finally:
        db.close()


@pytest.mark.parametrize(
    "body, detail",
    [
        ({}, "Alias is required."),
        ({"alias": 7}, "Alias is required."),
        ({"alias": "x" * 101}, "Alias is too long."),
    ],
)
def test_update_alias_validation(club, body, detail):
    _add_member(club)
    _sign_in(club)
    r = club.client.patch("/api/me", json=body)
    assert r.status_code == 400
    assert r.json()["detail"] == detail


def test_update_alias_requires_session(club):
    assert club.client.patch("/api/me", json={"alias": "Ace"}).status_code == 401


def test_logout_clears_session(club):
    _add_member(club)
    _sign_in(club)
    r = club.client.post("/api/auth/logout")
    assert r.status_code == 204
    assert "max-age=0" in _set_cookies(r)["gc_session"]
    assert club.client.get("/api/me").status_code == 401


def test_security_headers(club):
    r = club.client.get("/api/me")
    assert r.headers["x-content-type-options"] == "nosniff"
    assert r.headers["x-frame-options"] == "DENY"


def test_allowlisted_member_without_row_cannot_set_alias(club):
    club.google.claims = {"email": "boss@example.com"}
    _sign_in(club)

    r = club.client.patch("/api/me", json={"alias": "Chief"})
    assert r.status_code == 404
    assert r.json()["detail"] == "Member record not found."
    assert club.client.get("/api/me").json()["alias"] is None

    db = club.db()
    try:
        assert count_for_actor(db, actor_email="boss@example.com") == 0
    finally:
        db.close()


def test_cookies_are_secure_over_https(club):
    _add_member(club)
    client = TestClient(club.app, base_url="https://testserver", follow_redirects=False)

    r = client.get("/api/auth/login")
    assert "; secure" in _set_cookies(r)["gc_oauth"]
    q = {k: v[0] for k, v in parse_qs(urlparse(r.headers["location"]).query).items()}
    club.google.nonce = q["nonce"]

    r = client.get("/api/auth/callback", params={"code": "auth-code", "state": q["state"]})
    assert r.status_code == 302
    assert "; secure" in _set_cookies(r)["gc_session"]
    assert "; secure" in _set_cookies(r)["gc_oauth"]

    club.clock.now = T0 + 10 * MINUTE_MS
    r = client.get("/api/me")
    assert r.status_code == 200
    assert "; secure" in _set_cookies(r)["gc_session"]


def test_refresh_cookie_coexists_with_route_cookie(club):
    from fastapi import Depends, Response

    from gameclub.api.deps import require_session

    @club.app.get("/api/extra")
    def extra(session=Depends(require_session)) -> Response:
        resp = Response(status_code=200)
        resp.set_cookie("other", "1", path="/")
        return resp

    _add_member(club)
    _sign_in(club)

    club.clock.now = T0 + 10 * MINUTE_MS
    r = club.client.get("/api/extra")
    assert r.status_code == 200
    cookies = _set_cookies(r)
    assert set(cookies) == {"gc_session", "other"}
    payload = signing.decode(SECRET, club.client.cookies.get("gc_session"))
    assert payload["lastSeenAt"] == T0 + 10 * MINUTE_MS
