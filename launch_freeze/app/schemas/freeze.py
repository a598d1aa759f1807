from __future__ import annotations
from datetime import datetime
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from app.core.config import Action, Channel

SloStatus = Literal["healthy", "warning", "critical", "unknown"]
FreezeLevel = Literal["healthy", "warning", "critical"]
FreezeMetric = Literal["publish", "moderation", "sync_freshness"]
AuditEventKind = Literal["entered", "cleared", "recovery_hold", "updated", "unchanged"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------- window summaries ----------------------------

class PublishSummary(_Frozen):
    target_success_rate: float
    evaluated_count: int
    published_count: int
    blocked_count: int
    failed_count: int
    success_rate: Optional[float] = None
    failure_rate: Optional[float] = None
    burn_pct: Optional[float] = None
    status: SloStatus = "unknown"

class ModerationSummary(_Frozen):
    target_on_time_rate: float
    due_count: int
    on_time_count: int
    late_count: int
    on_time_rate: Optional[float] = None
    late_rate: Optional[float] = None
    burn_pct: Optional[float] = None
    status: SloStatus = "unknown"

class SyncFreshnessSummary(_Frozen):
    max_lag_hours: float
    latest_completed_at: Optional[datetime] = None
    lag_hours: Optional[float] = None
    burn_pct: Optional[float] = None
    status: SloStatus = "unknown"

class SloWindowSummary(_Frozen):
    window_hours: int = Field(ge=6, le=720)
    publish: PublishSummary
    moderation: ModerationSummary
    sync_freshness: SyncFreshnessSummary
    overall_status: SloStatus
    generated_at: datetime

    def metric_burns(self) -> List[Tuple[FreezeMetric, Optional[float], SloStatus]]:
        return [
            ("publish", self.publish.burn_pct, self.publish.status),
            ("moderation", self.moderation.burn_pct, self.moderation.status),
            ("sync_freshness", self.sync_freshness.burn_pct, self.sync_freshness.status),
        ]

    def compact(self) -> dict:
        return {
            "window_hours": self.window_hours,
            "overall_status": self.overall_status,
            "publish_burn_pct": self.publish.burn_pct,
            "moderation_burn_pct": self.moderation.burn_pct,
            "sync_freshness_burn_pct": self.sync_freshness.burn_pct,
        }


# ---------------------------- freeze decision ----------------------------

class Trigger(_Frozen):
    metric: FreezeMetric
    severity: Literal["warning", "critical"]
    window_hours: int
    burn_pct: float
    threshold: float
    status: SloStatus
    reason_code: str

class FreezeState(_Frozen):
    enabled: bool
    active: bool
    raw_active: bool
    blocked_channels: Tuple[Channel, ...]
    blocked_actions: Tuple[Action, ...]
    recovery_hold_active: bool = False
    recovery_healthy_windows: int = 0
    recovery_healthy_windows_required: int = 2
    level: FreezeLevel = "healthy"
    warning_burn_pct: float
    critical_burn_pct: float
    reason_codes: Tuple[str, ...] = ()
    override_active: bool = False
    override_id: Optional[int] = None
    override_expires_at: Optional[datetime] = None
    override_reason: Optional[str] = None
    triggers: Tuple[Trigger, ...] = ()
    window_summaries: Tuple[SloWindowSummary, ...] = ()
    generated_at: datetime

class AuditSnapshot(_Frozen):
    """Last persisted freeze state; the only state carried between evaluations."""
    active: bool
    raw_active: bool
    recovery_hold_active: bool
    recovery_healthy_windows: int = Field(ge=0)
    level: FreezeLevel
    reason_codes: Tuple[str, ...] = ()
    recorded_at: datetime
    event_id: Optional[int] = None

class LaunchScope(BaseModel):
    channels: Optional[List[str]] = None
    action: Optional[str] = None

class LaunchIncidentResult(_Frozen):
    notification_id: Optional[int] = None
    ops_delivered: bool = False
    ops_reason: Optional[str] = None

class AuditSyncSummary(_Frozen):
    enabled: bool
    active: bool
    raw_active: bool
    recovery_hold_active: bool
    changed: bool
    persisted: bool = False
    event: AuditEventKind
    reason_codes: Tuple[str, ...] = ()
    recovery_healthy_windows: int = 0
    recovery_healthy_windows_required: int = 2
    incident_key: Optional[str] = None
    postmortem_url: Optional[str] = None
    notification_id: Optional[int] = None
    ops_delivered: bool = False
    ops_reason: Optional[str] = None
