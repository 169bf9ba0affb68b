from __future__ import annotations

from datetime import datetime

from gameclub.core.time import utcnow

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from gameclub.db.base import Base


class Member(Base):
    __tablename__ = "members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Always stored lowercase; the session identity is the email.
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)

    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    alias: Mapped[str | None] = mapped_column(String(100), nullable=True)
    picture: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    role: Mapped[str] = mapped_column(String(16), nullable=False, default="member")  # admin|member
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
