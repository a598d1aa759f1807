from __future__ import annotations
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class PostmortemRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    incident_key: str
    completed_at: datetime
    completed_by: Optional[str] = None
    postmortem_url: Optional[str] = None
    notes: Optional[str] = None


class PostmortemIncident(BaseModel):
    """An `entered` audit event joined with its (optional) completion record."""
    model_config = ConfigDict(frozen=True)

    incident_key: str
    entered_at: datetime
    due_at: datetime
    postmortem_url: Optional[str] = None
    completed_at: Optional[datetime] = None
    overdue: bool = False


class PostmortemSlaSummary(BaseModel):
    enabled: bool
    scanned: int = 0
    overdue: int = 0
    alerts_created: int = 0
    ops_alerts_sent: int = 0
    ops_alerts_failed: int = 0
    postmortems_completed: int = 0
    overdue_incident_keys: List[str] = []


class PostmortemCompletion(BaseModel):
    record: PostmortemRecord
    created: bool
