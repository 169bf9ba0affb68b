from __future__ import annotations

from collections.abc import Generator
from functools import lru_cache

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from gameclub.core.settings import get_settings


@lru_cache
def get_engine() -> Engine:
    url = get_settings().database_url
    # Sync handlers run in a threadpool; SQLite connections must be shareable.
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


@lru_cache
def _sessionmaker() -> sessionmaker[Session]:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def get_db() -> Generator[Session, None, None]:
    db = _sessionmaker()()
    try:
        yield db
    finally:
        db.close()
