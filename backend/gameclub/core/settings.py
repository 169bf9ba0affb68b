from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DAY_SECONDS = 60 * 60 * 24


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    log_level: str = "INFO"
    allowed_hosts: str = ""

    cookie_secure: bool = False

    database_url: str = "sqlite+pysqlite:///./gameclub.db"

    # Signs both the session cookie and the pending-login cookie.
    session_secret: str

    google_client_id: str
    google_client_secret: str
    google_redirect_uri: str
    google_jwks_cache_seconds: int = 60 * 60
    http_timeout_seconds: float = 15

    session_cookie_name: str = "gc_session"
    session_idle_ttl_seconds: int = 45 * DAY_SECONDS
    session_absolute_ttl_seconds: int = 180 * DAY_SECONDS
    session_membership_recheck_seconds: int = 60 * 60
    session_activity_touch_seconds: int = 5 * 60
    oauth_pending_ttl_seconds: int = 10 * 60
    legacy_session_ttl_seconds: int = 7 * DAY_SECONDS

    allowed_emails: str = ""
    admin_emails: str = ""

    login_success_path: str = "/"
    login_denied_path: str = "/auth/denied"

    @field_validator("session_secret", "google_client_id", "google_client_secret", "google_redirect_uri")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()

    @field_validator("session_cookie_name")
    @classmethod
    def _cookie_name(cls, value: str) -> str:
        return value.strip() or "gc_session"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def _parse_email_list(raw: str) -> set[str]:
    return {e.strip().lower() for e in raw.split(",") if e.strip()}


def parse_allowed_emails(settings: Settings) -> set[str]:
    return _parse_email_list(settings.allowed_emails)


def parse_admin_emails(settings: Settings) -> set[str]:
    return _parse_email_list(settings.admin_emails)


def parse_allowed_hosts(settings: Settings) -> list[str]:
    if settings.allowed_hosts.strip():
        return [h.strip() for h in settings.allowed_hosts.split(",") if h.strip()]
    # Default for local dev + tests.
    return ["localhost", "127.0.0.1", "testserver"]
