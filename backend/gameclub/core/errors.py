from __future__ import annotations

from fastapi import status


class AuthError(Exception):
    """Base for failures on the sign-in path.

    `detail` is the only text that reaches the browser; the exception message
    may carry more context for logs.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: str = "Authentication failed."

    def __init__(self, message: str = "", *, detail: str | None = None) -> None:
        super().__init__(message or self.detail)
        if detail is not None:
            self.detail = detail


class ConfigurationError(AuthError):
    detail = "Server misconfigured."


class ProtocolError(AuthError):
    status_code = status.HTTP_400_BAD_REQUEST
    detail = "Invalid OAuth request."


class OAuthStateError(ProtocolError):
    detail = "Invalid OAuth state."


class IdentityError(AuthError):
    # Never say which check failed.
    status_code = status.HTTP_403_FORBIDDEN
    detail = "Authentication failed."


class InvalidNonceError(IdentityError):
    pass


class EmailNotVerifiedError(IdentityError):
    detail = "Email not verified."


class TokenExchangeError(AuthError):
    pass


class MembershipError(AuthError):
    # Not shown as an error page; the callback redirects to the denied page.
    status_code = status.HTTP_403_FORBIDDEN
    detail = "Not a club member."


class InvalidSessionError(ValueError):
    pass
