from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from gameclub.api.deps import get_session_manager, require_session
from gameclub.core.cookies import request_is_secure
from gameclub.core.settings import get_settings
from gameclub.db.session import get_db
from gameclub.repos.audit_logs import write_audit
from gameclub.repos.members import get_member_by_email, set_member_alias
from gameclub.services.sessions import SessionManager, SessionToken

router = APIRouter(tags=["auth"])

ALIAS_MAX_LENGTH = 100


class MeResponse(BaseModel):
    email: str
    name: str | None = None
    alias: str | None = None
    role: str
    picture: str | None = None


@router.get("/me", response_model=MeResponse)
def me(session: SessionToken = Depends(require_session)) -> MeResponse:
    return MeResponse(
        email=session.email,
        name=session.name,
        alias=session.alias,
        role=session.role,
        picture=session.picture,
    )


@router.patch("/me", status_code=status.HTTP_204_NO_CONTENT)
def update_me(
    request: Request,
    body: Any = Body(default=None),
    db: Session = Depends(get_db),
    session: SessionToken = Depends(require_session),
    sessions: SessionManager = Depends(get_session_manager),
) -> Response:
    if not isinstance(body, dict) or not isinstance(body.get("alias"), str):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Alias is required.")
    alias = body["alias"].strip() or None
    if alias is not None and len(alias) > ALIAS_MAX_LENGTH:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Alias is too long.")

    row = get_member_by_email(db, session.email)
    if row is None:
        # Allowlist-only members have no row to hold an alias.
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Member record not found.")
    previous = row.alias
    set_member_alias(db, session.email, alias)
    write_audit(
        db,
        actor_email=session.email,
        action="member.alias",
        entity_type="member",
        entity_id=row.id,
        before={"alias": previous},
        after={"alias": alias},
    )

    # Supersedes any refresh queued by the session read for this request.
    resp = Response(status_code=status.HTTP_204_NO_CONTENT)
    sessions.refresh(session, alias=alias).apply(resp, secure=request_is_secure(request, get_settings()))
    return resp
