from __future__ import annotations

import json
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from gameclub.models.audit_log import AuditLog


def write_audit(
    db: Session,
    *,
    actor_email: str,
    action: str,
    entity_type: str,
    entity_id: int,
    before: Any = None,
    after: Any = None,
) -> AuditLog | None:
    if not actor_email:
        return None
    # Keep snapshots small; never put tokens or cookie values in here.
    row = AuditLog(
        actor_email=actor_email.lower(),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        before_json=json.dumps(before) if before else None,
        after_json=json.dumps(after) if after else None,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def count_for_actor(db: Session, *, actor_email: str) -> int:
    stmt = select(func.count()).select_from(AuditLog).where(AuditLog.actor_email == actor_email.lower())
    return int(db.execute(stmt).scalar_one())
