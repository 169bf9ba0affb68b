from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import PlainTextResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gameclub.api.deps import get_oauth_state_manager, get_session_manager
from gameclub.core.cookies import OAUTH_COOKIE_NAME, request_is_secure
from gameclub.core.errors import AuthError, EmailNotVerifiedError, MembershipError, ProtocolError
from gameclub.core.settings import Settings, get_settings
from gameclub.db.session import get_db
from gameclub.providers.google_oauth import JwksCache, get_jwks_cache
from gameclub.providers.google_oauth import exchange_code as google_exchange
from gameclub.repos.members import update_member_profile
from gameclub.services.membership import lookup_member
from gameclub.services.oauth_state import OAuthStateManager
from gameclub.services.sessions import SessionManager

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _clean_err(msg: str, *, limit: int = 120) -> str:
    msg = (msg or "").replace("\n", " ").replace("\r", " ").strip()
    return msg[:limit]


@router.get("/login")
def login(
    request: Request,
    states: OAuthStateManager = Depends(get_oauth_state_manager),
) -> RedirectResponse:
    settings = get_settings()
    redirect = states.begin_login(client_id=settings.google_client_id, redirect_uri=settings.google_redirect_uri)
    resp = RedirectResponse(url=redirect.authorization_url, status_code=status.HTTP_302_FOUND)
    redirect.cookie.apply(resp, secure=request_is_secure(request, settings))
    return resp


@router.get("/callback")
def callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    db: Session = Depends(get_db),
    states: OAuthStateManager = Depends(get_oauth_state_manager),
    sessions: SessionManager = Depends(get_session_manager),
    jwks: JwksCache = Depends(get_jwks_cache),
) -> Response:
    settings = get_settings()
    try:
        resp = _complete_login(
            request,
            settings,
            code=code,
            state=state,
            error=error,
            db=db,
            states=states,
            sessions=sessions,
            jwks=jwks,
        )
    except MembershipError:
        resp = RedirectResponse(url=settings.login_denied_path, status_code=status.HTTP_302_FOUND)
    except AuthError as e:
        logger.warning("oauth_callback_rejected", error=type(e).__name__, message=str(e))
        resp = PlainTextResponse(e.detail, status_code=e.status_code)
    except Exception:
        logger.exception("oauth_callback_failed")
        resp = PlainTextResponse("Authentication failed.", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    # The pending-login cookie is single use, whatever happened above.
    states.clear().apply(resp, secure=request_is_secure(request, settings))
    return resp


def _complete_login(
    request: Request,
    settings: Settings,
    *,
    code: str | None,
    state: str | None,
    error: str | None,
    db: Session,
    states: OAuthStateManager,
    sessions: SessionManager,
    jwks: JwksCache,
) -> Response:
    if error:
        raise ProtocolError(f"Provider returned {error!r}", detail=f"OAuth error: {_clean_err(error)}")
    if not code or not state:
        raise ProtocolError("Missing code or state", detail="Missing OAuth parameters.")

    # CSRF check strictly before the code leaves this server.
    pending = states.validate_callback(request.cookies.get(OAUTH_COOKIE_NAME), state)

    identity = google_exchange(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        code=code,
        redirect_uri=settings.google_redirect_uri,
        code_verifier=pending.code_verifier,
        nonce=pending.nonce,
        jwks=jwks,
        timeout=settings.http_timeout_seconds,
    )
    if not identity.email or not identity.email_verified:
        raise EmailNotVerifiedError("Google account email is not verified")

    try:
        member = lookup_member(db, settings, identity.email)
        if member is not None:
            update_member_profile(
                db,
                identity.email,
                name=None if member.name else identity.name,
                picture=identity.picture,
            )
    except SQLAlchemyError as e:
        raise AuthError("Membership store unavailable") from e

    if member is None:
        logger.info("login_denied", email=identity.email.lower())
        raise MembershipError("No active membership")

    cookie = sessions.create(
        {
            "email": identity.email,
            "name": member.name or identity.name,
            "alias": member.alias,
            "picture": identity.picture,
            "role": member.role,
        }
    )
    resp = RedirectResponse(url=settings.login_success_path, status_code=status.HTTP_302_FOUND)
    cookie.apply(resp, secure=request_is_secure(request, settings))
    logger.info("login_succeeded", email=member.email, role=member.role)
    return resp


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    request: Request,
    sessions: SessionManager = Depends(get_session_manager),
) -> Response:
    resp = Response(status_code=status.HTTP_204_NO_CONTENT)
    sessions.clear().apply(resp, secure=request_is_secure(request, get_settings()))
    return resp
