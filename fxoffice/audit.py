"""Append-only audit trail of compliance and settlement actions.

Entries are written in the caller's database transaction and never updated
or deleted; nothing here commits.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from fxoffice.clock import as_utc, utcnow
from fxoffice.models import AuditLogEntry, User

logger = logging.getLogger(__name__)


def record(
    db: Session,
    user: Optional[User],
    action: str,
    entity_type: str,
    entity_id: Optional[str] = None,
    details: Optional[str] = None,
) -> AuditLogEntry:
    entry = AuditLogEntry(
        user_id=user.id if user is not None else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        created_at=utcnow(),
    )
    db.add(entry)
    db.flush()
    logger.info("Audit %s %s %s by %s", action, entity_type, entity_id or "-", user.email if user else "system")
    return entry


def list_entries(
    db: Session,
    *,
    user_id: Optional[int] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 100,
) -> list[AuditLogEntry]:
    """Newest first."""
    query = select(AuditLogEntry)
    if user_id is not None:
        query = query.where(AuditLogEntry.user_id == user_id)
    if entity_type is not None:
        query = query.where(AuditLogEntry.entity_type == entity_type)
    if entity_id is not None:
        query = query.where(AuditLogEntry.entity_id == entity_id)
    rows = db.execute(query.order_by(AuditLogEntry.id.desc())).scalars().all()
    date_from = as_utc(date_from)
    date_to = as_utc(date_to)
    if date_from is not None:
        rows = [row for row in rows if as_utc(row.created_at) >= date_from]
    if date_to is not None:
        rows = [row for row in rows if as_utc(row.created_at) <= date_to]
    return rows[:limit]


def stats(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    rows = db.execute(select(AuditLogEntry)).scalars().all()
    day_ago = now - timedelta(days=1)
    week_ago = now - timedelta(days=7)
    actions = Counter(row.action for row in rows)
    return {
        "total_entries": len(rows),
        "today_entries": sum(1 for row in rows if as_utc(row.created_at) >= day_ago),
        "week_entries": sum(1 for row in rows if as_utc(row.created_at) >= week_ago),
        "unique_users": len({row.user_id for row in rows if row.user_id is not None}),
        "top_actions": [{"action": action, "count": count} for action, count in actions.most_common(5)],
    }
