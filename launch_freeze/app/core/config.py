"""
Launch-freeze configuration.

Everything the controller needs is resolved once into frozen pydantic models and
passed explicitly into the services. Only the resolvers below look at the process
environment; precedence is env var -> `launch_freeze:` block of the policy file ->
built-in default.
"""
from __future__ import annotations
import os
from typing import Any, FrozenSet, Iterable, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.utils.policy import launch_freeze_section

SUPPORTED_CHANNELS: Tuple[str, ...] = ("pinterest", "youtube_shorts")
SUPPORTED_ACTIONS: Tuple[str, ...] = ("scale", "optimize", "recover", "incubate")
OVERRIDE_ROLES: Tuple[str, ...] = ("admin", "expert")

Channel = Literal["pinterest", "youtube_shorts"]
Action = Literal["scale", "optimize", "recover", "incubate"]

MIN_WINDOW_HOURS = 6
MAX_WINDOW_HOURS = 24 * 30
DEFAULT_WINDOW_HOURS: Tuple[int, ...] = (24, 168)


def clamp_window_hours(value: int) -> int:
    return max(MIN_WINDOW_HOURS, min(int(value), MAX_WINDOW_HOURS))


def _unique(values: Iterable[Any]) -> list:
    out: list = []
    for v in values:
        if v not in out:
            out.append(v)
    return out


class SloTargets(BaseModel):
    """Per-metric objectives fed to the threshold classifier."""
    model_config = ConfigDict(frozen=True)

    publish_success_rate: float = Field(default=0.97, gt=0, lt=1)
    moderation_on_time_rate: float = Field(default=0.95, gt=0, lt=1)
    sync_max_lag_hours: float = Field(default=6.0, gt=0)
    classifier_warning_burn_pct: float = Field(default=50.0, gt=0)


class FreezeConfig(BaseModel):
    """Baseline launch-freeze policy. critical_burn_pct is always > warning_burn_pct."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    warning_burn_pct: float = 50.0
    critical_burn_pct: float = 100.0
    window_hours: Tuple[int, ...] = DEFAULT_WINDOW_HOURS
    blocked_channels: Tuple[Channel, ...] = SUPPORTED_CHANNELS
    blocked_actions: Tuple[Action, ...] = SUPPORTED_ACTIONS
    recovery_healthy_windows_required: int = Field(default=2, ge=1, le=24)
    postmortem_base_url: Optional[str] = None
    slo_targets: SloTargets = SloTargets()

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        warning = float(data.get("warning_burn_pct", 50.0))
        critical = float(data.get("critical_burn_pct", 100.0))
        data["warning_burn_pct"] = warning
        data["critical_burn_pct"] = max(warning + 1, critical)
        if "window_hours" in data and data["window_hours"] is not None:
            windows = _unique(clamp_window_hours(h) for h in data["window_hours"])
            data["window_hours"] = tuple(windows) or DEFAULT_WINDOW_HOURS
        for key in ("blocked_channels", "blocked_actions"):
            if key in data and data[key] is not None:
                data[key] = tuple(_unique(data[key]))
        return data


class PostmortemSlaConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    sla_hours: int = Field(default=48, ge=1, le=24 * 30)
    scan_limit: int = Field(default=200, ge=10, le=2000)
    max_alerts_per_sweep: int = Field(default=10, ge=0, le=100)


# -------------------------- parsing helpers --------------------------

def parse_number(raw: Any, fallback: float, lo: float, hi: float) -> float:
    try:
        val = float(raw)
    except (TypeError, ValueError):
        return fallback
    if val != val or val in (float("inf"), float("-inf")):
        return fallback
    return max(lo, min(val, hi))

def parse_integer(raw: Any, fallback: int, lo: int, hi: int) -> int:
    try:
        val = int(float(str(raw).strip()))
    except (TypeError, ValueError, OverflowError):
        return fallback
    return max(lo, min(val, hi))

def parse_bool(raw: Any, fallback: bool) -> bool:
    if raw is None:
        return fallback
    if isinstance(raw, bool):
        return raw
    s = str(raw).strip().lower()
    if s in ("true", "1", "yes"):
        return True
    if s in ("false", "0", "no"):
        return False
    return fallback

def _as_items(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set, frozenset)):
        return [str(x).strip() for x in raw]
    return [x.strip() for x in str(raw).split(",")]

def parse_window_hours(raw: Any) -> Tuple[int, ...]:
    out: List[int] = []
    for item in _as_items(raw):
        try:
            out.append(clamp_window_hours(int(float(item))))
        except (ValueError, OverflowError):
            continue
    out = _unique(out)
    return tuple(out) if out else DEFAULT_WINDOW_HOURS

def parse_csv_enum(raw: Any, supported: Tuple[str, ...]) -> Tuple[str, ...]:
    items = [x.lower() for x in _as_items(raw) if x]
    if not items or any(x in ("all", "*") for x in items):
        return supported
    parsed = _unique(x for x in items if x in supported)
    return tuple(parsed) if parsed else supported


def _pick(env: Mapping[str, str], name: str, section: Mapping[str, Any], key: str) -> Any:
    val = env.get(name)
    if val is not None and str(val).strip() != "":
        return val
    return section.get(key)


# -------------------------- resolvers --------------------------

def resolve_freeze_config(env: Optional[Mapping[str, str]] = None,
                          policy: Optional[dict] = None) -> FreezeConfig:
    env = os.environ if env is None else env
    sec = launch_freeze_section(policy)
    slo = sec.get("slo_targets") if isinstance(sec.get("slo_targets"), dict) else {}

    warning = parse_number(_pick(env, "LAUNCH_FREEZE_WARNING_BURN_PCT", sec, "warning_burn_pct"), 50, 1, 1000)
    critical = parse_number(_pick(env, "LAUNCH_FREEZE_CRITICAL_BURN_PCT", sec, "critical_burn_pct"), 100, 2, 2000)
    base_url = _pick(env, "LAUNCH_FREEZE_POSTMORTEM_BASE_URL", sec, "postmortem_base_url")

    targets = SloTargets(
        publish_success_rate=parse_number(
            _pick(env, "LAUNCH_FREEZE_PUBLISH_TARGET", slo, "publish_success_rate"), 0.97, 0.5, 0.9999),
        moderation_on_time_rate=parse_number(
            _pick(env, "LAUNCH_FREEZE_MODERATION_TARGET", slo, "moderation_on_time_rate"), 0.95, 0.5, 0.9999),
        sync_max_lag_hours=parse_number(
            _pick(env, "LAUNCH_FREEZE_SYNC_MAX_LAG_HOURS", slo, "sync_max_lag_hours"), 6, 0.25, 24 * 30),
        classifier_warning_burn_pct=parse_number(
            _pick(env, "LAUNCH_FREEZE_CLASSIFIER_WARNING_BURN_PCT", slo, "classifier_warning_burn_pct"), 50, 1, 100),
    )

    return FreezeConfig(
        enabled=parse_bool(_pick(env, "LAUNCH_FREEZE_ENABLED", sec, "enabled"), True),
        warning_burn_pct=warning,
        critical_burn_pct=critical,
        window_hours=parse_window_hours(_pick(env, "LAUNCH_FREEZE_WINDOWS_HOURS", sec, "window_hours")),
        blocked_channels=parse_csv_enum(
            _pick(env, "LAUNCH_FREEZE_BLOCKED_CHANNELS", sec, "blocked_channels"), SUPPORTED_CHANNELS),
        blocked_actions=parse_csv_enum(
            _pick(env, "LAUNCH_FREEZE_BLOCKED_ACTIONS", sec, "blocked_actions"), SUPPORTED_ACTIONS),
        recovery_healthy_windows_required=parse_integer(
            _pick(env, "LAUNCH_FREEZE_RECOVERY_HEALTHY_WINDOWS", sec, "recovery_healthy_windows_required"), 2, 1, 24),
        postmortem_base_url=(str(base_url).strip() or None) if base_url else None,
        slo_targets=targets,
    )


def resolve_postmortem_sla_config(env: Optional[Mapping[str, str]] = None,
                                  policy: Optional[dict] = None) -> PostmortemSlaConfig:
    env = os.environ if env is None else env
    sec = launch_freeze_section(policy)
    pm = sec.get("postmortem") if isinstance(sec.get("postmortem"), dict) else {}
    return PostmortemSlaConfig(
        enabled=parse_bool(_pick(env, "LAUNCH_FREEZE_POSTMORTEM_SLA_ENABLED", pm, "sla_enabled"), True),
        sla_hours=parse_integer(_pick(env, "LAUNCH_FREEZE_POSTMORTEM_SLA_HOURS", pm, "sla_hours"), 48, 1, 24 * 30),
        scan_limit=parse_integer(_pick(env, "LAUNCH_FREEZE_POSTMORTEM_SCAN_LIMIT", pm, "scan_limit"), 200, 10, 2000),
        max_alerts_per_sweep=parse_integer(
            _pick(env, "LAUNCH_FREEZE_POSTMORTEM_MAX_ALERTS", pm, "max_alerts_per_sweep"), 10, 0, 100),
    )


def resolve_override_allowed_roles(env: Optional[Mapping[str, str]] = None,
                                   policy: Optional[dict] = None) -> FrozenSet[str]:
    env = os.environ if env is None else env
    sec = launch_freeze_section(policy)
    items = [x.lower() for x in _as_items(_pick(env, "LAUNCH_FREEZE_OVERRIDE_ALLOWED_ROLES", sec, "override_allowed_roles"))]
    roles = {x for x in items if x in OVERRIDE_ROLES}
    roles.add("admin")
    return frozenset(roles)


def can_mutate_override(role: Optional[str], allowed_roles: FrozenSet[str]) -> bool:
    """Capability predicate: may this role apply/clear overrides and decide requests?"""
    if role not in OVERRIDE_ROLES:
        return False
    return role in allowed_roles
