"""
Launch-freeze decision: multi-window burn triggers plus recovery hysteresis.

`derive_freeze_state` and `apply_recovery_policy` are pure; `evaluate_launch_freeze`
wires them to the metrics source, the active override and the last audit snapshot.
"""
from __future__ import annotations
import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import SUPPORTED_ACTIONS, SUPPORTED_CHANNELS, FreezeConfig
from app.crud.metrics_source import MetricsSource, SqlMetricsSource
from app.crud.override import apply_override_to_config, get_active_override, validate_override
from app.metrics import event_write_failures_total, freeze_evaluations_total, observe_freeze_state
from app.models.event import LAUNCH_BLOCK_SOURCE
from app.schemas.freeze import AuditSnapshot, FreezeState, LaunchIncidentResult, SloWindowSummary, Trigger
from app.schemas.override import OverrideRecord
from app.services.audit import record_event
from app.services.ops_channel import AlertSink, send_ops_alert
from app.services.window import get_slo_window_summary
from app.utils.clock import as_utc, utc_now

log = logging.getLogger(__name__)

RECOVERY_HOLD = "recovery_hold"
RECOVERY_EVIDENCE_MISSING = "recovery_evidence_missing"

# "not passed" marker so callers can still pass an explicit None
_UNSET: Any = object()


def reason_code(metric: str, severity: str, window_hours: int) -> str:
    return f"{metric}_burn_{severity}_{window_hours}h"


def _unique(items: Iterable[str]) -> tuple:
    out: List[str] = []
    for x in items:
        if x not in out:
            out.append(x)
    return tuple(out)


def derive_freeze_state(config: FreezeConfig, summaries: Sequence[SloWindowSummary],
                        now: Optional[datetime] = None) -> FreezeState:
    """Raw (pre-hysteresis) state from the effective config's own burn thresholds."""
    warning: List[Trigger] = []
    critical: List[Trigger] = []
    for summary in summaries:
        for metric, burn, status in summary.metric_burns():
            if burn is None or not math.isfinite(burn):
                continue
            if burn > config.critical_burn_pct:
                critical.append(Trigger(
                    metric=metric, severity="critical", window_hours=summary.window_hours,
                    burn_pct=burn, threshold=config.critical_burn_pct, status=status,
                    reason_code=reason_code(metric, "critical", summary.window_hours),
                ))
            elif burn > config.warning_burn_pct:
                warning.append(Trigger(
                    metric=metric, severity="warning", window_hours=summary.window_hours,
                    burn_pct=burn, threshold=config.warning_burn_pct, status=status,
                    reason_code=reason_code(metric, "warning", summary.window_hours),
                ))

    raw_active = config.enabled and bool(critical)
    level = "critical" if raw_active else ("warning" if warning else "healthy")
    triggers = critical if raw_active else warning
    return FreezeState(
        enabled=config.enabled,
        active=raw_active,
        raw_active=raw_active,
        blocked_channels=config.blocked_channels,
        blocked_actions=config.blocked_actions,
        recovery_healthy_windows_required=config.recovery_healthy_windows_required,
        level=level,
        warning_burn_pct=config.warning_burn_pct,
        critical_burn_pct=config.critical_burn_pct,
        reason_codes=_unique(t.reason_code for t in triggers),
        triggers=tuple(triggers),
        window_summaries=tuple(summaries),
        generated_at=as_utc(now) or utc_now(),
    )


def apply_recovery_policy(state: FreezeState, previous: Optional[AuditSnapshot],
                          config: FreezeConfig) -> FreezeState:
    """
    Require `recovery_healthy_windows_required` consecutive non-critical evaluations
    before an active freeze clears. A critical breach restarts the count; an
    evaluation where any metric in any window has no data does not advance it.
    """
    required = config.recovery_healthy_windows_required
    if not config.enabled:
        return state.model_copy(update=dict(
            active=False, raw_active=False, recovery_hold_active=False,
            recovery_healthy_windows=0, recovery_healthy_windows_required=required,
            level="healthy", reason_codes=(), triggers=(),
        ))

    if state.raw_active:
        return state.model_copy(update=dict(
            active=True, recovery_hold_active=False,
            recovery_healthy_windows=0, recovery_healthy_windows_required=required,
        ))

    prev_active = bool(previous and previous.active)
    prev_count = max(0, previous.recovery_healthy_windows) if previous else 0
    reasons = list(state.reason_codes)

    missing_evidence = prev_active and any(
        status == "unknown" for s in state.window_summaries for _, _, status in s.metric_burns()
    )
    if missing_evidence:
        count = prev_count
        hold = True
        reasons.append(RECOVERY_EVIDENCE_MISSING)
    else:
        count = prev_count + 1 if prev_active else 0
        hold = prev_active and count < required

    if hold:
        reasons.append(RECOVERY_HOLD)
    return state.model_copy(update=dict(
        active=hold,
        recovery_hold_active=hold,
        recovery_healthy_windows=count,
        recovery_healthy_windows_required=required,
        level="warning" if hold else state.level,
        reason_codes=_unique(reasons),
    ))


def _usable_override(override: Optional[OverrideRecord], baseline: FreezeConfig) -> Optional[OverrideRecord]:
    if override is None:
        return None
    errors = validate_override(override.override, baseline)
    if errors:
        log.warning("[override] ignoring override %s outside current baseline: %s", override.id, errors)
        return None
    return override


def evaluate_launch_freeze(
    db: Session,
    baseline: FreezeConfig,
    *,
    source: Optional[MetricsSource] = None,
    now: Optional[datetime] = None,
    previous_audit: Optional[AuditSnapshot] = _UNSET,
    override: Optional[OverrideRecord] = _UNSET,
) -> FreezeState:
    """
    Current FreezeState. Metric-source errors propagate: an unreadable metric is
    never reported as healthy.
    """
    from app.services.audit_sync import get_latest_audit_snapshot

    now = as_utc(now) or utc_now()
    source = source or SqlMetricsSource(db)
    if override is _UNSET:
        override = get_active_override(db, now)
    override = _usable_override(override, baseline)
    effective = apply_override_to_config(baseline, override.override if override else None)

    summaries = [
        get_slo_window_summary(source, hours, now, effective.slo_targets)
        for hours in effective.window_hours
    ] if effective.enabled else []
    raw = derive_freeze_state(effective, summaries, now)

    if previous_audit is _UNSET:
        previous_audit = get_latest_audit_snapshot(db)
    state = apply_recovery_policy(raw, previous_audit, effective)
    if override is not None:
        state = state.model_copy(update=dict(
            override_active=True,
            override_id=override.id,
            override_expires_at=override.expires_at,
            override_reason=override.reason,
        ))

    freeze_evaluations_total.inc()
    observe_freeze_state(state.active, state.level)
    return state


def should_block_launch(state: FreezeState, channels: Optional[Iterable[str]] = None,
                        action: Optional[str] = None) -> bool:
    """True only while the freeze is active and the scope touches a blocked channel/action.
    An empty or unrecognized scope matches everything."""
    if not state.enabled or not state.active:
        return False
    requested = [c.strip().lower() for c in (channels or []) if isinstance(c, str)]
    requested = [c for c in requested if c in SUPPORTED_CHANNELS]
    channel_match = not requested or any(c in state.blocked_channels for c in requested)
    act = (action or "").strip().lower()
    action_match = act not in SUPPORTED_ACTIONS or act in state.blocked_actions
    return channel_match and action_match


def summarize_top_triggers(triggers: Sequence[Trigger]) -> str:
    if not triggers:
        return "No launch-freeze triggers."
    return ", ".join(f"{t.metric}@{t.window_hours}h burn={t.burn_pct:.1f}%" for t in triggers[:3])


def state_details(state: FreezeState) -> Dict[str, Any]:
    return {
        "level": state.level,
        "active": state.active,
        "raw_active": state.raw_active,
        "recovery_hold_active": state.recovery_hold_active,
        "recovery_healthy_windows": state.recovery_healthy_windows,
        "recovery_healthy_windows_required": state.recovery_healthy_windows_required,
        "reason_codes": list(state.reason_codes),
        "warning_burn_pct": state.warning_burn_pct,
        "critical_burn_pct": state.critical_burn_pct,
        "windows": [s.compact() for s in state.window_summaries],
    }


def emit_launch_freeze_incident(
    db: Session,
    state: FreezeState,
    *,
    context: str,
    actor: Optional[str] = None,
    campaign_id: Optional[str] = None,
    alert_sink: AlertSink = send_ops_alert,
) -> LaunchIncidentResult:
    """Record that a launch was refused by an active freeze and page ops."""
    if not state.active:
        return LaunchIncidentResult(ops_reason="freeze_inactive")

    title = "Launch freeze active (SLO error budget exceeded)"
    message = (f"{summarize_top_triggers(state.triggers)} Launches are blocked until burn "
               f"recovers or an explicit override is applied.")
    details = {"context": context, "campaign_id": campaign_id, "actor": actor, **state_details(state)}

    notification_id = None
    try:
        row = record_event(
            db, LAUNCH_BLOCK_SOURCE,
            event="launch_blocked", status="open", severity="critical",
            actor=actor, title=title, message=message,
            details={**details, "triggers": [t.model_dump() for t in state.triggers]},
        )
        notification_id = row.id
    except SQLAlchemyError as e:
        db.rollback()
        event_write_failures_total.labels(source=LAUNCH_BLOCK_SOURCE).inc()
        log.error("[launch] failed to record launch-block incident context=%s: %s", context, e)

    ops = alert_sink(LAUNCH_BLOCK_SOURCE, "critical", title, message,
                     {**details, "trigger_count": len(state.triggers)})
    return LaunchIncidentResult(notification_id=notification_id,
                                ops_delivered=ops.delivered, ops_reason=ops.reason)
