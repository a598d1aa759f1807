from __future__ import annotations
from datetime import datetime
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from app.core.config import Action, Channel

OverrideStatus = Literal["active", "cleared", "expired"]
RequestStatus = Literal["pending", "approved", "rejected", "expired"]
REQUEST_STATUSES: Tuple[str, ...] = ("pending", "approved", "rejected", "expired")


class OverrideDelta(BaseModel):
    """Partial FreezeConfig; absent fields fall back to the baseline."""
    model_config = ConfigDict(frozen=True)

    warning_burn_pct: Optional[float] = Field(default=None, ge=1, le=1000)
    critical_burn_pct: Optional[float] = Field(default=None, ge=2, le=2000)
    blocked_channels: Optional[Tuple[Channel, ...]] = None
    blocked_actions: Optional[Tuple[Action, ...]] = None
    recovery_healthy_windows_required: Optional[int] = Field(default=None, ge=1, le=24)

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class OverrideRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    actor_id: Optional[str] = None
    reason: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    postmortem_url: Optional[str] = None
    incident_key: Optional[str] = None
    override: OverrideDelta = OverrideDelta()
    status: OverrideStatus = "active"
    superseded_id: Optional[int] = None


class OverrideRequestRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    requested_by: Optional[str] = None
    requested_by_role: Optional[str] = None
    reason: str
    submitted_at: datetime
    expires_at: Optional[datetime] = None
    postmortem_url: Optional[str] = None
    incident_key: Optional[str] = None
    override: OverrideDelta = OverrideDelta()
    status: RequestStatus = "pending"
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    decision_reason: Optional[str] = None
    applied_override_id: Optional[int] = None


class OverrideApplyResult(BaseModel):
    applied: bool
    override: Optional[OverrideRecord] = None
    errors: List[str] = []

class OverrideRequestResult(BaseModel):
    submitted: bool
    request: Optional[OverrideRequestRecord] = None
    errors: List[str] = []

class OverrideDecisionResult(BaseModel):
    decided: bool
    request: OverrideRequestRecord
    applied_override: Optional[OverrideRecord] = None
    errors: List[str] = []
