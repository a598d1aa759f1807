from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional

from app.core.config import SloTargets, clamp_window_hours
from app.crud.metrics_source import MetricsSource
from app.metrics import window_eval_seconds
from app.schemas.freeze import ModerationSummary, PublishSummary, SloWindowSummary, SyncFreshnessSummary
from app.utils.clock import as_utc, utc_now
from app.utils.slo import assess_max_threshold_slo, assess_success_rate_slo, combine_status


def _rate(num: int, den: int) -> Optional[float]:
    return num / den if den > 0 else None


@window_eval_seconds.time()
def get_slo_window_summary(
    source: MetricsSource,
    window_hours: int,
    now: Optional[datetime] = None,
    targets: Optional[SloTargets] = None,
) -> SloWindowSummary:
    """
    Summarize publish success, moderation on-time rate and sync freshness for
    the lookback [now - window_hours, now]. A metric with no denominator is
    `unknown`, never `healthy`. Errors from the metrics source propagate.
    """
    targets = targets or SloTargets()
    window_hours = clamp_window_hours(window_hours)
    now = as_utc(now) or utc_now()
    since = now - timedelta(hours=window_hours)
    cutoff = targets.classifier_warning_burn_pct

    pc = source.publish_counts(since, now)
    success_rate = _rate(pc.published, pc.evaluated)
    pub_status, pub_burn = assess_success_rate_slo(success_rate, targets.publish_success_rate, cutoff)
    publish = PublishSummary(
        target_success_rate=targets.publish_success_rate,
        evaluated_count=pc.evaluated,
        published_count=pc.published,
        blocked_count=pc.blocked,
        failed_count=pc.failed,
        success_rate=success_rate,
        failure_rate=None if success_rate is None else 1.0 - success_rate,
        burn_pct=pub_burn,
        status=pub_status,
    )

    mc = source.moderation_counts(since, now)
    on_time_rate = _rate(mc.on_time, mc.due)
    mod_status, mod_burn = assess_success_rate_slo(on_time_rate, targets.moderation_on_time_rate, cutoff)
    moderation = ModerationSummary(
        target_on_time_rate=targets.moderation_on_time_rate,
        due_count=mc.due,
        on_time_count=mc.on_time,
        late_count=mc.late,
        on_time_rate=on_time_rate,
        late_rate=None if on_time_rate is None else 1.0 - on_time_rate,
        burn_pct=mod_burn,
        status=mod_status,
    )

    latest = as_utc(source.latest_sync_completed_at())
    lag_hours = max(0.0, (now - latest).total_seconds() / 3600.0) if latest else None
    sync_status, sync_burn = assess_max_threshold_slo(lag_hours, targets.sync_max_lag_hours, cutoff)
    freshness = SyncFreshnessSummary(
        max_lag_hours=targets.sync_max_lag_hours,
        latest_completed_at=latest,
        lag_hours=None if lag_hours is None else round(lag_hours, 2),
        burn_pct=sync_burn,
        status=sync_status,
    )

    return SloWindowSummary(
        window_hours=window_hours,
        publish=publish,
        moderation=moderation,
        sync_freshness=freshness,
        overall_status=combine_status([pub_status, mod_status, sync_status]),
        generated_at=now,
    )
