"""
Audit synchronizer: diff the freshly evaluated FreezeState against the last
persisted snapshot and append a transition row when something changed.

The log is change-driven: `unchanged` writes nothing. Only `entered` and
`cleared` page ops. Two evaluations racing from the same predecessor snapshot
collide on the row's dedupe key, so only one transition is kept.
"""
from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Optional, Tuple
from urllib.parse import quote

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import FreezeConfig
from app.crud.events import latest_event
from app.crud.metrics_source import MetricsSource
from app.metrics import event_write_failures_total, freeze_transitions_total
from app.models.event import AUDIT_SOURCE, LAUNCH_BLOCK_SOURCE
from app.schemas.freeze import AuditSnapshot, AuditSyncSummary, FreezeState
from app.services.audit import record_event
from app.services.freeze import state_details, evaluate_launch_freeze, summarize_top_triggers
from app.services.ops_channel import AlertSink, send_ops_alert
from app.utils.clock import as_utc, iso

log = logging.getLogger(__name__)

INCIDENT_KEY_PREFIX = "launch-freeze"


def _read_bool(v: Any) -> Optional[bool]:
    return v if isinstance(v, bool) else None

def _read_int(v: Any) -> Optional[int]:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return max(0, int(v))


def get_latest_audit_snapshot(db: Session) -> Optional[AuditSnapshot]:
    """Project the most recent audit row; None when there is none or it is malformed."""
    row = latest_event(db, AUDIT_SOURCE)
    if row is None:
        return None
    d = row.details or {}
    active = _read_bool(d.get("active"))
    raw_active = _read_bool(d.get("raw_active"))
    hold = _read_bool(d.get("recovery_hold_active"))
    count = _read_int(d.get("recovery_healthy_windows"))
    if active is None or raw_active is None or hold is None or count is None:
        log.warning("[audit] latest audit row %s is missing state fields; ignoring", row.id)
        return None
    level = d.get("level") if d.get("level") in ("critical", "warning") else "healthy"
    codes = [str(c).strip() for c in (d.get("reason_codes") or []) if isinstance(c, str) and c.strip()]
    return AuditSnapshot(
        active=active, raw_active=raw_active, recovery_hold_active=hold,
        recovery_healthy_windows=count, level=level, reason_codes=tuple(codes),
        recorded_at=as_utc(row.created_at), event_id=row.id,
    )


def classify_transition(state: FreezeState, previous: Optional[AuditSnapshot]) -> str:
    if previous is None:
        active_changed = state.active
        raw_changed = state.raw_active
        recovery_changed = state.recovery_hold_active
        level_changed = state.active
    else:
        active_changed = previous.active != state.active
        raw_changed = previous.raw_active != state.raw_active
        recovery_changed = (previous.recovery_hold_active != state.recovery_hold_active
                            or previous.recovery_healthy_windows != state.recovery_healthy_windows)
        level_changed = previous.level != state.level

    if active_changed:
        return "entered" if state.active else "cleared"
    if state.active and not state.raw_active and (raw_changed or recovery_changed):
        return "recovery_hold"
    if raw_changed or level_changed or recovery_changed:
        return "updated"
    return "unchanged"


def incident_key_for(ts: datetime) -> str:
    """Hour-truncated, so concurrent evaluations within the hour share one key."""
    return f"{INCIDENT_KEY_PREFIX}:{iso(ts)[:13]}"


def postmortem_url_for(incident_key: Optional[str], base_url: Optional[str]) -> Optional[str]:
    if not incident_key or not base_url:
        return None
    return f"{base_url.rstrip('/')}/{quote(incident_key, safe='')}"


def _entered_context(db: Session) -> Tuple[Optional[str], Optional[str]]:
    row = latest_event(db, AUDIT_SOURCE, event="entered")
    if row is None:
        return None, None
    return row.incident_key, (row.details or {}).get("postmortem_url")


_TITLES = {
    "entered": "Launch freeze activated",
    "cleared": "Launch freeze cleared",
    "recovery_hold": "Launch freeze recovery hold",
    "updated": "Launch freeze updated",
}
_SEVERITY = {"entered": "critical", "cleared": "info"}


def sync_launch_freeze_audit_state(
    db: Session,
    baseline: FreezeConfig,
    *,
    source: Optional[MetricsSource] = None,
    now: Optional[datetime] = None,
    notify_ops: bool = True,
    alert_sink: AlertSink = send_ops_alert,
) -> AuditSyncSummary:
    predecessor = latest_event(db, AUDIT_SOURCE)
    previous = get_latest_audit_snapshot(db)
    state = evaluate_launch_freeze(db, baseline, source=source, now=now, previous_audit=previous)
    event = classify_transition(state, previous)

    summary = dict(
        enabled=state.enabled,
        active=state.active,
        raw_active=state.raw_active,
        recovery_hold_active=state.recovery_hold_active,
        reason_codes=state.reason_codes,
        recovery_healthy_windows=state.recovery_healthy_windows,
        recovery_healthy_windows_required=state.recovery_healthy_windows_required,
        event=event,
    )
    if event == "unchanged":
        return AuditSyncSummary(changed=False, **summary)

    if event == "entered":
        incident_key = incident_key_for(state.generated_at)
        postmortem_url = postmortem_url_for(incident_key, baseline.postmortem_base_url)
    elif event == "cleared":
        incident_key, postmortem_url = _entered_context(db)
    else:
        incident_key, postmortem_url = None, None

    stamp = iso(state.generated_at)
    title = f"{_TITLES[event]} ({stamp})"
    if event == "cleared":
        message = (f"Launch freeze cleared after {state.recovery_healthy_windows}/"
                   f"{state.recovery_healthy_windows_required} healthy windows.")
    else:
        message = (f"{summarize_top_triggers(state.triggers)} Recovery windows: "
                   f"{state.recovery_healthy_windows}/{state.recovery_healthy_windows_required}.")
        if postmortem_url:
            message += f" Postmortem: {postmortem_url}"
    severity = _SEVERITY.get(event, "warning")
    details = {**state_details(state), "event": event,
               "incident_key": incident_key, "postmortem_url": postmortem_url}

    notification_id = None
    persisted = False
    try:
        row = record_event(
            db, AUDIT_SOURCE,
            event=event, status="active" if state.active else "inactive", severity=severity,
            incident_key=incident_key, title=title, message=message,
            details={**details, "triggers": [t.model_dump() for t in state.triggers]},
            dedupe_key=f"{AUDIT_SOURCE}:after:{predecessor.id if predecessor else 'root'}",
            created_at=state.generated_at,
        )
        notification_id = row.id
        persisted = True
        freeze_transitions_total.labels(event=event).inc()
        log.info("[audit] launch freeze %s (active=%s level=%s)", event, state.active, state.level)
    except IntegrityError:
        # a concurrent evaluation already recorded the transition from this snapshot
        db.rollback()
        log.info("[audit] %s transition already recorded by another evaluation", event)
        return AuditSyncSummary(changed=True, persisted=False, incident_key=incident_key,
                                postmortem_url=postmortem_url, **summary)
    except (SQLAlchemyError, OSError) as e:
        db.rollback()
        event_write_failures_total.labels(source=AUDIT_SOURCE).inc()
        log.error("[audit] failed to record launch freeze %s: %s", event, e)

    ops_delivered, ops_reason = False, None
    if notify_ops and event in ("entered", "cleared"):
        ops = alert_sink(LAUNCH_BLOCK_SOURCE, severity, title, message, details)
        ops_delivered, ops_reason = ops.delivered, ops.reason

    return AuditSyncSummary(
        changed=True,
        persisted=persisted,
        incident_key=incident_key,
        postmortem_url=postmortem_url,
        notification_id=notification_id,
        ops_delivered=ops_delivered,
        ops_reason=ops_reason,
        **summary,
    )
