from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from gameclub.core.settings import get_settings
from gameclub.db.session import get_db
from gameclub.services.membership import lookup_member
from gameclub.services.oauth_state import OAuthStateManager
from gameclub.services.sessions import SessionManager, SessionPolicy, SessionRead, SessionToken


def get_session_manager() -> SessionManager:
    settings = get_settings()
    return SessionManager(
        secret=settings.session_secret,
        cookie_name=settings.session_cookie_name,
        policy=SessionPolicy.from_settings(settings),
    )


def get_oauth_state_manager() -> OAuthStateManager:
    settings = get_settings()
    return OAuthStateManager(secret=settings.session_secret, ttl_seconds=settings.oauth_pending_ttl_seconds)


def get_current_session(
    request: Request,
    db: Session = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
) -> SessionToken | None:
    # One read per request; the middleware in main picks up `read.cookie`.
    read: SessionRead | None = getattr(request.state, "session_read", None)
    if read is None:
        settings = get_settings()
        read = sessions.read(request.cookies, lambda email: lookup_member(db, settings, email))
        request.state.session_read = read
    return read.session


def require_session(session: SessionToken | None = Depends(get_current_session)) -> SessionToken:
    if session is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required.")
    return session
