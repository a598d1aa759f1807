# launch_freeze/app/metrics.py
from prometheus_client import Counter, Gauge, Histogram

# === Core metrics (definitions ONLY here) ===
freeze_evaluations_total = Counter(
    "launch_freeze_evaluations_total", "Number of launch-freeze evaluations"
)

freeze_active_gauge = Gauge(
    "launch_freeze_active", "1 while the launch freeze is active, else 0"
)

freeze_level_gauge = Gauge(
    "launch_freeze_level", "Current freeze level (one-hot)", ["level"]
)

freeze_transitions_total = Counter(
    "launch_freeze_transitions_total", "Persisted audit transitions", ["event"]
)

launch_checks_total = Counter(
    "launch_freeze_checks_total", "Launch scope checks", ["outcome"]
)

ops_alerts_total = Counter(
    "launch_freeze_ops_alerts_total", "Ops alert delivery attempts", ["source", "outcome"]
)

override_ops_total = Counter(
    "launch_freeze_override_operations_total", "Override governance operations", ["operation", "outcome"]
)

postmortems_overdue_gauge = Gauge(
    "launch_freeze_postmortems_overdue", "Incidents past their postmortem SLA"
)

event_write_failures_total = Counter(
    "launch_freeze_event_write_failures_total", "Freeze-log writes that failed", ["source"]
)

window_eval_seconds = Histogram(
    "launch_freeze_window_eval_seconds", "Time spent evaluating one SLO window"
)

LEVELS = ("healthy", "warning", "critical")
TRANSITIONS = ("entered", "cleared", "recovery_hold", "updated")

def init_metrics_zero():
    # create label combos at 0 so Grafana never sees “no data”
    for lvl in LEVELS:
        freeze_level_gauge.labels(level=lvl).set(0)
    for ev in TRANSITIONS:
        freeze_transitions_total.labels(event=ev).inc(0)
    for outcome in ("blocked", "allowed"):
        launch_checks_total.labels(outcome=outcome).inc(0)

    # unlabeled metrics – make them visible
    freeze_evaluations_total.inc(0)
    freeze_active_gauge.set(0)
    postmortems_overdue_gauge.set(0)

# Small helper so everyone updates the state gauges in the same way
def observe_freeze_state(active: bool, level: str) -> None:
    freeze_active_gauge.set(1 if active else 0)
    for lvl in LEVELS:
        freeze_level_gauge.labels(level=lvl).set(1 if lvl == level else 0)
