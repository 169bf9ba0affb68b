from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from gameclub.models.member import Member


def get_active_member(db: Session, email: str) -> Member | None:
    stmt = select(Member).where(Member.email == email.lower(), Member.active.is_(True))
    return db.execute(stmt).scalars().first()


def get_member_by_email(db: Session, email: str) -> Member | None:
    stmt = select(Member).where(Member.email == email.lower())
    return db.execute(stmt).scalars().first()


def create_member(
    db: Session,
    *,
    email: str,
    role: str = "member",
    name: str | None = None,
    alias: str | None = None,
    active: bool = True,
) -> Member:
    member = Member(email=email.lower(), role=role, name=name, alias=alias, active=active)
    db.add(member)
    db.commit()
    db.refresh(member)
    return member


def update_member_profile(db: Session, email: str, *, name: str | None = None, picture: str | None = None) -> None:
    values: dict[str, str] = {}
    if name:
        values["name"] = name
    if picture:
        values["picture"] = picture
    if not values:
        return
    db.execute(update(Member).where(Member.email == email.lower()).values(**values))
    db.commit()


def set_member_alias(db: Session, email: str, alias: str | None) -> None:
    db.execute(update(Member).where(Member.email == email.lower()).values(alias=alias))
    db.commit()
