from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from backend.app.domain.errors import ValidationError
from backend.app.models import AuditLog


def log_audit_event(
    db: Session,
    *,
    user_id: int,
    event_type: str,
    actor: str = "system",
    reason: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Record a state change inside the caller's unit of work.

    Only flushes; the caller's commit (or rollback) decides whether it sticks.
    """
    row = AuditLog(
        user_id=user_id,
        event_type=event_type,
        actor=actor,
        reason=reason,
        entity_type=entity_type,
        entity_id=entity_id,
        before_state=before,
        after_state=after,
    )
    db.add(row)
    db.flush()
    return row


def _encode_cursor(created_at: datetime, audit_id: int) -> str:
    return f"{created_at.isoformat()}|{audit_id}"


def _decode_cursor(cursor: str) -> Tuple[datetime, int]:
    try:
        created_at_raw, audit_id = cursor.split("|", 1)
        return datetime.fromisoformat(created_at_raw), int(audit_id)
    except ValueError as exc:
        raise ValidationError("invalid cursor") from exc


def list_audit_events(
    db: Session,
    user_id: int,
    limit: int = 100,
    cursor: Optional[str] = None,
    event_type: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
) -> Dict[str, Any]:
    query = select(AuditLog).where(AuditLog.user_id == user_id)
    if event_type:
        query = query.where(AuditLog.event_type == event_type)
    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.where(AuditLog.entity_id == entity_id)
    if cursor:
        cursor_created_at, cursor_id = _decode_cursor(cursor)
        query = query.where(
            or_(
                AuditLog.created_at < cursor_created_at,
                and_(AuditLog.created_at == cursor_created_at, AuditLog.id < cursor_id),
            )
        )

    rows = (
        db.execute(
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit + 1)
        )
        .scalars()
        .all()
    )

    next_cursor = None
    if len(rows) > limit:
        last = rows[limit - 1]
        next_cursor = _encode_cursor(last.created_at, last.id)
        rows = rows[:limit]

    items = [
        {
            "id": row.id,
            "event_type": row.event_type,
            "actor": row.actor,
            "reason": row.reason,
            "entity_type": row.entity_type,
            "entity_id": row.entity_id,
            "before_state": row.before_state,
            "after_state": row.after_state,
            "created_at": row.created_at,
        }
        for row in rows
    ]

    return {"items": items, "next_cursor": next_cursor}
