from __future__ import annotations
import logging
from typing import Iterable

from sqlalchemy.orm import Session

from app.crud.events import append_event, event_to_dict
from app.models.event import FreezeEvent
from app.utils.audit_sink import write_event

log = logging.getLogger(__name__)


def mirror_events(rows: Iterable[FreezeEvent]) -> None:
    """Best-effort JSONL copy of committed rows; the database stays the source of truth."""
    for row in rows:
        try:
            write_event(event_to_dict(row))
        except OSError as e:
            log.warning("[audit] jsonl mirror failed for event %s: %s", row.id, e)


def record_event(db: Session, source: str, **fields) -> FreezeEvent:
    """
    Persist one freeze-log row and mirror it to the filesystem as JSONL.
    Database errors (including dedupe-key collisions) propagate to the caller.
    """
    row = append_event(db, source, **fields)
    db.commit()
    db.refresh(row)
    mirror_events([row])
    return row
