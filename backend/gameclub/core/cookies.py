from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request, Response

from gameclub.core.settings import Settings


OAUTH_COOKIE_NAME = "gc_oauth"


@dataclass(frozen=True)
class SetCookie:
    """A cookie to be written on a response that does not exist yet."""

    name: str
    value: str
    max_age: int

    def apply(self, resp: Response, *, secure: bool) -> None:
        # Starlette appends a new Set-Cookie header per call; existing cookies on
        # the response are left alone.
        resp.set_cookie(
            key=self.name,
            value=self.value,
            max_age=self.max_age,
            httponly=True,
            secure=secure,
            samesite="lax",
            path="/",
        )


def cleared(name: str) -> SetCookie:
    return SetCookie(name=name, value="", max_age=0)


def has_cookie(resp: Response, name: str) -> bool:
    prefix = f"{name}=".encode("latin-1")
    return any(k == b"set-cookie" and v.startswith(prefix) for k, v in resp.raw_headers)


def request_is_secure(request: Request, settings: Settings) -> bool:
    return settings.cookie_secure or request.url.scheme == "https"
