"""Alembic migration environment.

Uses the application's engine and metadata so migrations run against the
same DATABASE_URL the API does.
"""

from __future__ import annotations

from alembic import context

from gameclub.db.base import Base
from gameclub.db.session import get_engine

# Registers every table on Base.metadata.
from gameclub import models as _models  # noqa: F401

target_metadata = Base.metadata


def run_migrations_online() -> None:
    with get_engine().connect() as conn:
        context.configure(connection=conn, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    raise RuntimeError("Offline migration mode is not supported. Run without --sql.")
else:
    run_migrations_online()
