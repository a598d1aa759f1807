"""
Primitives over the append-only freeze log.

Every piece of state the controller carries between calls lives here as rows
keyed by `source`. "Current" values are projections: the most recent row for a
source (optionally narrowed by event/status/incident_key/ref_id), ordered by
created_at then id. Rows are never updated or deleted.
"""
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models.event import FreezeEvent
from app.utils.clock import iso


def append_event(
    db: Session,
    source: str,
    *,
    event: Optional[str] = None,
    status: Optional[str] = None,
    severity: str = "info",
    incident_key: Optional[str] = None,
    ref_id: Optional[int] = None,
    actor: Optional[str] = None,
    title: str = "",
    message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    dedupe_key: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> FreezeEvent:
    """Stage a row and flush it so it gets an id. Committing is the caller's job."""
    row = FreezeEvent(
        source=source, event=event, status=status, severity=severity,
        incident_key=incident_key, ref_id=ref_id, actor=actor,
        title=title, message=message, details=dict(details or {}),
        dedupe_key=dedupe_key,
    )
    if created_at is not None:
        row.created_at = created_at
    db.add(row)
    db.flush()
    return row


def _scoped(db: Session, source: str, event: Optional[str] = None, status: Optional[str] = None,
            incident_key: Optional[str] = None, ref_id: Optional[int] = None):
    q = db.query(FreezeEvent).filter(FreezeEvent.source == source)
    if event is not None:
        q = q.filter(FreezeEvent.event == event)
    if status is not None:
        q = q.filter(FreezeEvent.status == status)
    if incident_key is not None:
        q = q.filter(FreezeEvent.incident_key == incident_key)
    if ref_id is not None:
        q = q.filter(FreezeEvent.ref_id == ref_id)
    return q.order_by(FreezeEvent.created_at.desc(), FreezeEvent.id.desc())


def latest_event(db: Session, source: str, **filters) -> Optional[FreezeEvent]:
    return _scoped(db, source, **filters).first()


def list_events(db: Session, source: str, limit: int = 100, **filters) -> List[FreezeEvent]:
    """Newest first."""
    return _scoped(db, source, **filters).limit(max(1, int(limit))).all()


def get_event(db: Session, event_id: int, source: Optional[str] = None) -> Optional[FreezeEvent]:
    row = db.get(FreezeEvent, event_id)
    if row is None or (source is not None and row.source != source):
        return None
    return row


def event_to_dict(row: FreezeEvent) -> Dict[str, Any]:
    return {
        "id": row.id,
        "source": row.source,
        "event": row.event,
        "status": row.status,
        "severity": row.severity,
        "incident_key": row.incident_key,
        "ref_id": row.ref_id,
        "actor": row.actor,
        "title": row.title,
        "message": row.message,
        "details": row.details or {},
        "created_at": iso(row.created_at),
    }
