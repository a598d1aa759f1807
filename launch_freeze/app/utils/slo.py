from __future__ import annotations
import math
from typing import Iterable, Optional, Tuple

# status bands shared by every metric: burn > 100% of budget is critical,
# burn above the caller's cutoff is a warning
_RANK = {"critical": 3, "warning": 2, "healthy": 1, "unknown": 0}


def _finite(x: Optional[float]) -> bool:
    return x is not None and not (isinstance(x, float) and (math.isnan(x) or math.isinf(x)))


def _band(burn_pct: float, warning_burn_pct: float) -> str:
    if burn_pct > 100:
        return "critical"
    if burn_pct > warning_burn_pct:
        return "warning"
    return "healthy"


def assess_success_rate_slo(actual: Optional[float], target: float,
                            warning_burn_pct: float = 50.0) -> Tuple[str, Optional[float]]:
    """
    Classify an observed success rate against its target.
    burn_pct = failure_rate / (1 - target) * 100, i.e. share of the error budget consumed.
    Returns (status, burn_pct); ("unknown", None) when there was nothing to measure.
    """
    if not _finite(actual):
        return "unknown", None
    budget = max(1e-12, 1.0 - float(target))
    failure_rate = max(0.0, 1.0 - float(actual))
    burn = round(failure_rate / budget * 100.0, 2)
    return _band(burn, warning_burn_pct), burn


def assess_max_threshold_slo(actual: Optional[float], max_threshold: float,
                             warning_burn_pct: float = 50.0) -> Tuple[str, Optional[float]]:
    """Classify a value that must stay under max_threshold (e.g. sync lag in hours)."""
    if not _finite(actual):
        return "unknown", None
    burn = round(max(0.0, float(actual)) / max(1e-12, float(max_threshold)) * 100.0, 2)
    return _band(burn, warning_burn_pct), burn


def combine_status(statuses: Iterable[str]) -> str:
    """Worst of the inputs; unknown only when nothing else is known."""
    worst = "unknown"
    for s in statuses:
        if _RANK.get(s, 0) > _RANK[worst]:
            worst = s
    return worst
