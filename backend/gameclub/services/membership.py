from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from gameclub.core.settings import Settings, parse_admin_emails, parse_allowed_emails
from gameclub.repos.members import get_active_member


ROLES = ("admin", "member")


@dataclass(frozen=True)
class MemberInfo:
    email: str
    role: str
    name: str | None = None
    alias: str | None = None


def lookup_member(db: Session, settings: Settings, email: str) -> MemberInfo | None:
    """Resolve an email to an active club membership.

    A members row wins. Addresses listed in ADMIN_EMAILS / ALLOWED_EMAILS are
    members even without a row, so bootstrap admins survive the periodic
    session recheck.
    """

    email = email.strip().lower()
    if not email:
        return None

    row = get_active_member(db, email)
    if row is not None:
        return MemberInfo(email=row.email, role=row.role, name=row.name or None, alias=row.alias or None)

    if email in parse_admin_emails(settings):
        return MemberInfo(email=email, role="admin")
    if email in parse_allowed_emails(settings):
        return MemberInfo(email=email, role="member")
    return None
