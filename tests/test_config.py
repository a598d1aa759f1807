import pytest

from app.core.config import (
    SUPPORTED_ACTIONS, SUPPORTED_CHANNELS, FreezeConfig, can_mutate_override,
    resolve_freeze_config, resolve_override_allowed_roles, resolve_postmortem_sla_config,
)


def test_defaults_without_env_or_policy():
    cfg = resolve_freeze_config(env={}, policy={})
    assert cfg.enabled is True
    assert cfg.warning_burn_pct == 50
    assert cfg.critical_burn_pct == 100
    assert cfg.window_hours == (24, 168)
    assert cfg.blocked_channels == SUPPORTED_CHANNELS
    assert cfg.blocked_actions == SUPPORTED_ACTIONS
    assert cfg.recovery_healthy_windows_required == 2
    assert cfg.postmortem_base_url is None

@pytest.mark.parametrize("warning,critical", [(50, 100), (80, 30), (100, 100), (999, 2), (1, 2)])
def test_critical_always_above_warning(warning, critical):
    cfg = FreezeConfig(warning_burn_pct=warning, critical_burn_pct=critical)
    assert cfg.critical_burn_pct > cfg.warning_burn_pct
    env = {"LAUNCH_FREEZE_WARNING_BURN_PCT": str(warning), "LAUNCH_FREEZE_CRITICAL_BURN_PCT": str(critical)}
    resolved = resolve_freeze_config(env=env, policy={})
    assert resolved.critical_burn_pct > resolved.warning_burn_pct

def test_critical_floor_is_warning_plus_one():
    cfg = resolve_freeze_config(env={"LAUNCH_FREEZE_WARNING_BURN_PCT": "80",
                                     "LAUNCH_FREEZE_CRITICAL_BURN_PCT": "30"}, policy={})
    assert cfg.critical_burn_pct == 81

def test_window_hours_clamped_and_deduplicated():
    cfg = resolve_freeze_config(env={"LAUNCH_FREEZE_WINDOWS_HOURS": "3, 24, 24, 1000, abc"}, policy={})
    assert cfg.window_hours == (6, 24, 720)

def test_blocked_sets_parse_csv():
    cfg = resolve_freeze_config(env={"LAUNCH_FREEZE_BLOCKED_CHANNELS": "Pinterest, tiktok",
                                     "LAUNCH_FREEZE_BLOCKED_ACTIONS": "*"}, policy={})
    assert cfg.blocked_channels == ("pinterest",)
    assert cfg.blocked_actions == SUPPORTED_ACTIONS
    # nothing recognizable falls back to everything
    cfg = resolve_freeze_config(env={"LAUNCH_FREEZE_BLOCKED_CHANNELS": "tiktok"}, policy={})
    assert cfg.blocked_channels == SUPPORTED_CHANNELS

def test_env_beats_policy_file():
    policy = {"launch_freeze": {"warning_burn_pct": 70, "recovery_healthy_windows_required": 4}}
    assert resolve_freeze_config(env={}, policy=policy).warning_burn_pct == 70
    cfg = resolve_freeze_config(env={"LAUNCH_FREEZE_WARNING_BURN_PCT": "60"}, policy=policy)
    assert cfg.warning_burn_pct == 60
    assert cfg.recovery_healthy_windows_required == 4

def test_out_of_range_values_are_clamped():
    cfg = resolve_freeze_config(env={"LAUNCH_FREEZE_RECOVERY_HEALTHY_WINDOWS": "99",
                                     "LAUNCH_FREEZE_WARNING_BURN_PCT": "0",
                                     "LAUNCH_FREEZE_ENABLED": "false"}, policy={})
    assert cfg.recovery_healthy_windows_required == 24
    assert cfg.warning_burn_pct == 1
    assert cfg.enabled is False

def test_garbage_numbers_fall_back():
    cfg = resolve_freeze_config(env={"LAUNCH_FREEZE_WARNING_BURN_PCT": "lots"}, policy={})
    assert cfg.warning_burn_pct == 50
    for raw in ("24,inf", "1e400,168", "nan"):
        cfg = resolve_freeze_config(env={"LAUNCH_FREEZE_WINDOWS_HOURS": raw}, policy={})
        assert all(6 <= h <= 720 for h in cfg.window_hours)
    cfg = resolve_freeze_config(env={}, policy={"launch_freeze": {"window_hours": ["inf", 48]}})
    assert cfg.window_hours == (48,)

def test_slo_targets_from_policy():
    policy = {"launch_freeze": {"slo_targets": {"publish_success_rate": 0.99, "sync_max_lag_hours": 12}}}
    cfg = resolve_freeze_config(env={}, policy=policy)
    assert cfg.slo_targets.publish_success_rate == 0.99
    assert cfg.slo_targets.sync_max_lag_hours == 12
    assert cfg.slo_targets.moderation_on_time_rate == 0.95

def test_postmortem_sla_config():
    cfg = resolve_postmortem_sla_config(env={}, policy={})
    assert (cfg.enabled, cfg.sla_hours, cfg.scan_limit, cfg.max_alerts_per_sweep) == (True, 48, 200, 10)
    cfg = resolve_postmortem_sla_config(env={"LAUNCH_FREEZE_POSTMORTEM_SCAN_LIMIT": "5",
                                             "LAUNCH_FREEZE_POSTMORTEM_MAX_ALERTS": "500",
                                             "LAUNCH_FREEZE_POSTMORTEM_SLA_HOURS": "24"}, policy={})
    assert cfg.scan_limit == 10
    assert cfg.max_alerts_per_sweep == 100
    assert cfg.sla_hours == 24

def test_override_roles_always_include_admin():
    assert resolve_override_allowed_roles(env={}, policy={}) == frozenset({"admin"})
    roles = resolve_override_allowed_roles(env={"LAUNCH_FREEZE_OVERRIDE_ALLOWED_ROLES": "expert,viewer"}, policy={})
    assert roles == frozenset({"admin", "expert"})

def test_can_mutate_override():
    admin_only = frozenset({"admin"})
    assert can_mutate_override("admin", admin_only)
    assert not can_mutate_override("expert", admin_only)
    assert can_mutate_override("expert", frozenset({"admin", "expert"}))
    assert not can_mutate_override("viewer", frozenset({"admin", "expert"}))
    assert not can_mutate_override(None, admin_only)
