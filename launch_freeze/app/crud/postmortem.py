"""
Postmortem SLA tracking.

Incidents are not stored: they are `entered` audit rows joined with
`completed` postmortem rows on incident_key. An incident is overdue once
entered_at + sla_hours has passed without a completion. The sweep opens at
most one SLA alert per incident; an open alert is never closed by the sweep.
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Dict, List, NamedTuple, Optional, Set

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import PostmortemSlaConfig
from app.crud.events import latest_event, list_events
from app.metrics import event_write_failures_total, postmortems_overdue_gauge
from app.models.event import AUDIT_SOURCE, POSTMORTEM_SLA_SOURCE, POSTMORTEM_SOURCE, FreezeEvent
from app.schemas.postmortem import PostmortemCompletion, PostmortemIncident, PostmortemRecord, PostmortemSlaSummary
from app.services.audit import record_event
from app.services.ops_channel import AlertSink, send_ops_alert
from app.utils.clock import as_utc, iso, parse_iso, utc_now

log = logging.getLogger(__name__)


class _Evaluation(NamedTuple):
    incidents: List[PostmortemIncident]
    overdue: List[PostmortemIncident]
    completed: int


def _completion_record(row: FreezeEvent) -> PostmortemRecord:
    d = row.details or {}
    return PostmortemRecord(
        id=row.id,
        incident_key=row.incident_key,
        completed_at=parse_iso(d.get("completed_at")) or as_utc(row.created_at),
        completed_by=row.actor,
        postmortem_url=d.get("postmortem_url"),
        notes=d.get("notes"),
    )


def _evaluate(db: Session, config: PostmortemSlaConfig, now: datetime) -> _Evaluation:
    if not config.enabled:
        return _Evaluation([], [], 0)

    entered_rows = list_events(db, AUDIT_SOURCE, limit=config.scan_limit, event="entered")
    completed_rows = list_events(db, POSTMORTEM_SOURCE, limit=config.scan_limit, status="completed")

    entered: Dict[str, FreezeEvent] = {}
    for row in entered_rows:
        if row.incident_key and row.incident_key not in entered:
            entered[row.incident_key] = row
    completed: Dict[str, PostmortemRecord] = {}
    for row in completed_rows:
        if row.incident_key and row.incident_key not in completed:
            completed[row.incident_key] = _completion_record(row)

    sla = timedelta(hours=config.sla_hours)
    incidents: List[PostmortemIncident] = []
    for key, row in entered.items():
        entered_at = as_utc(row.created_at)
        due_at = entered_at + sla
        done = completed.get(key)
        incidents.append(PostmortemIncident(
            incident_key=key,
            entered_at=entered_at,
            due_at=due_at,
            postmortem_url=(row.details or {}).get("postmortem_url"),
            completed_at=done.completed_at if done else None,
            overdue=done is None and due_at <= now,
        ))
    incidents.sort(key=lambda i: i.entered_at, reverse=True)
    overdue = [i for i in incidents if i.overdue]
    return _Evaluation(incidents, overdue, sum(1 for i in incidents if i.completed_at is not None))


def get_postmortem_sla_summary(db: Session, config: PostmortemSlaConfig,
                               now: Optional[datetime] = None) -> PostmortemSlaSummary:
    now = as_utc(now) or utc_now()
    ev = _evaluate(db, config, now)
    postmortems_overdue_gauge.set(len(ev.overdue))
    return PostmortemSlaSummary(
        enabled=config.enabled,
        scanned=len(ev.incidents),
        overdue=len(ev.overdue),
        postmortems_completed=ev.completed,
        overdue_incident_keys=[i.incident_key for i in ev.overdue],
    )


def list_postmortem_incidents(db: Session, config: PostmortemSlaConfig, *, overdue_only: bool = False,
                              now: Optional[datetime] = None) -> List[PostmortemIncident]:
    now = as_utc(now) or utc_now()
    ev = _evaluate(db, config, now)
    return ev.overdue if overdue_only else ev.incidents


def record_postmortem_completion(
    db: Session,
    *,
    incident_key: str,
    completed_by: Optional[str],
    postmortem_url: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PostmortemCompletion:
    """Idempotent: an existing completion for the key is returned unchanged."""
    key = (incident_key or "").strip()
    if not key:
        raise ValueError("incidentKey is required")

    existing = latest_event(db, POSTMORTEM_SOURCE, status="completed", incident_key=key)
    if existing is not None:
        return PostmortemCompletion(record=_completion_record(existing), created=False)

    now = as_utc(now) or utc_now()
    notes = (notes or "").strip() or None
    try:
        row = record_event(
            db, POSTMORTEM_SOURCE,
            event="completed", status="completed", severity="info",
            incident_key=key, actor=completed_by,
            title=f"Launch freeze postmortem completed ({key})",
            message=notes or "Postmortem completed and logged.",
            details={"completed_at": iso(now), "postmortem_url": postmortem_url, "notes": notes},
            dedupe_key=f"{POSTMORTEM_SOURCE}:{key}",
            created_at=now,
        )
    except IntegrityError:
        db.rollback()
        existing = latest_event(db, POSTMORTEM_SOURCE, status="completed", incident_key=key)
        if existing is None:
            raise
        return PostmortemCompletion(record=_completion_record(existing), created=False)

    log.info("[postmortem] completed %s by %s", key, completed_by)
    return PostmortemCompletion(record=_completion_record(row), created=True)


def _open_alert_keys(db: Session, limit: int) -> Set[str]:
    rows = list_events(db, POSTMORTEM_SLA_SOURCE, limit=limit, status="open")
    return {r.incident_key for r in rows if r.incident_key}


def run_postmortem_sla_sweep(
    db: Session,
    config: PostmortemSlaConfig,
    *,
    now: Optional[datetime] = None,
    notify_ops: bool = True,
    alert_sink: AlertSink = send_ops_alert,
) -> PostmortemSlaSummary:
    if not config.enabled:
        return PostmortemSlaSummary(enabled=False)

    now = as_utc(now) or utc_now()
    ev = _evaluate(db, config, now)
    postmortems_overdue_gauge.set(len(ev.overdue))
    summary = PostmortemSlaSummary(
        enabled=True,
        scanned=len(ev.incidents),
        overdue=len(ev.overdue),
        postmortems_completed=ev.completed,
        overdue_incident_keys=[i.incident_key for i in ev.overdue],
    )
    if not ev.overdue or config.max_alerts_per_sweep <= 0:
        return summary

    open_keys = _open_alert_keys(db, config.scan_limit)
    for incident in ev.overdue:
        if summary.alerts_created >= config.max_alerts_per_sweep:
            break
        if incident.incident_key in open_keys:
            continue

        overdue_hours = max(0.0, (now - incident.due_at).total_seconds() / 3600.0)
        severity = "critical" if overdue_hours >= config.sla_hours else "warning"
        title = f"Launch freeze postmortem overdue ({incident.incident_key})"
        message = (f"Postmortem for launch-freeze incident {incident.incident_key} was due at "
                   f"{iso(incident.due_at)} ({config.sla_hours}h SLA) and remains incomplete.")
        details = {
            "incident_key": incident.incident_key,
            "entered_at": iso(incident.entered_at),
            "due_at": iso(incident.due_at),
            "postmortem_url": incident.postmortem_url,
            "sla_hours": config.sla_hours,
            "overdue_hours": round(overdue_hours, 2),
        }
        try:
            record_event(
                db, POSTMORTEM_SLA_SOURCE,
                event="overdue", status="open", severity=severity,
                incident_key=incident.incident_key, title=title, message=message,
                details=details, created_at=now,
            )
        except SQLAlchemyError as e:
            db.rollback()
            event_write_failures_total.labels(source=POSTMORTEM_SLA_SOURCE).inc()
            log.error("[postmortem] failed to open SLA alert for %s: %s", incident.incident_key, e)
            continue
        summary.alerts_created += 1
        open_keys.add(incident.incident_key)

        if not notify_ops:
            continue
        try:
            ops = alert_sink(POSTMORTEM_SLA_SOURCE, severity, title, message, details)
        except Exception as e:
            # the SLA row is already committed; keep sweeping the rest
            log.error("[postmortem] ops alert sink raised for %s: %s", incident.incident_key, e)
            summary.ops_alerts_failed += 1
            continue
        if ops.delivered:
            summary.ops_alerts_sent += 1
        else:
            summary.ops_alerts_failed += 1

    log.info("[postmortem] sweep scanned=%s overdue=%s alerts=%s",
             summary.scanned, summary.overdue, summary.alerts_created)
    return summary
