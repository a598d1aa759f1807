from datetime import timedelta

import pytest

from app.core.config import PostmortemSlaConfig
from app.crud.postmortem import (
    get_postmortem_sla_summary, list_postmortem_incidents, record_postmortem_completion,
    run_postmortem_sla_sweep,
)
from app.models.event import AUDIT_SOURCE, POSTMORTEM_SLA_SOURCE, FreezeEvent
from app.services.audit import record_event
from app.services.audit_sync import incident_key_for
from conftest import NOW, RecordingSink

SLA = PostmortemSlaConfig()


def _enter(db, at):
    key = incident_key_for(at)
    record_event(db, AUDIT_SOURCE, event="entered", status="active", severity="critical",
                 incident_key=key, title="Launch freeze activated",
                 details={"active": True, "postmortem_url": f"https://wiki.example.com/pm/{key}"},
                 created_at=at)
    return key

def _sla_rows(db):
    return db.query(FreezeEvent).filter(FreezeEvent.source == POSTMORTEM_SLA_SOURCE).all()


def test_overdue_exactly_at_deadline(db):
    key = _enter(db, NOW)
    before = list_postmortem_incidents(db, SLA, now=NOW + timedelta(hours=47, minutes=59))
    assert [i.overdue for i in before] == [False]
    at = list_postmortem_incidents(db, SLA, now=NOW + timedelta(hours=48))
    assert at[0].overdue
    assert at[0].due_at == NOW + timedelta(hours=48)
    assert at[0].postmortem_url.endswith(key)

    record_postmortem_completion(db, incident_key=key, completed_by="ana", now=NOW + timedelta(hours=50))
    after = list_postmortem_incidents(db, SLA, now=NOW + timedelta(hours=60))
    assert not after[0].overdue
    assert after[0].completed_at == NOW + timedelta(hours=50)

def test_summary_and_overdue_filter(db):
    old = _enter(db, NOW)
    _enter(db, NOW + timedelta(hours=40))
    now = NOW + timedelta(hours=50)
    summary = get_postmortem_sla_summary(db, SLA, now=now)
    assert summary.scanned == 2
    assert summary.overdue == 1
    assert summary.overdue_incident_keys == [old]
    assert [i.incident_key for i in list_postmortem_incidents(db, SLA, overdue_only=True, now=now)] == [old]
    assert len(list_postmortem_incidents(db, SLA, now=now)) == 2

def test_completion_is_idempotent(db):
    first = record_postmortem_completion(db, incident_key=" launch-freeze:2026-03-02T12 ",
                                         completed_by="ana", notes="root cause: vendor", now=NOW)
    assert first.created
    assert first.record.incident_key == "launch-freeze:2026-03-02T12"
    second = record_postmortem_completion(db, incident_key="launch-freeze:2026-03-02T12",
                                          completed_by="bo", now=NOW + timedelta(hours=1))
    assert not second.created
    assert second.record.id == first.record.id
    assert second.record.completed_by == "ana"

@pytest.mark.parametrize("key", ["", "   ", None])
def test_completion_requires_key(db, key):
    with pytest.raises(ValueError):
        record_postmortem_completion(db, incident_key=key, completed_by="ana", now=NOW)


def test_sweep_alerts_once_per_incident(db, sink):
    old = _enter(db, NOW)
    recent = _enter(db, NOW + timedelta(hours=3))
    now = NOW + timedelta(hours=96)

    summary = run_postmortem_sla_sweep(db, SLA, now=now, alert_sink=sink)
    assert summary.overdue == 2
    assert summary.alerts_created == 2
    assert summary.ops_alerts_sent == 2
    severities = {c["details"]["incident_key"]: c["severity"] for c in sink.calls}
    # 48h past due on a 48h SLA is critical, 45h is still a warning
    assert severities == {old: "critical", recent: "warning"}
    assert all(c["source"] == POSTMORTEM_SLA_SOURCE for c in sink.calls)

    again = run_postmortem_sla_sweep(db, SLA, now=now + timedelta(hours=1), alert_sink=sink)
    assert again.overdue == 2
    assert again.alerts_created == 0
    assert len(sink.calls) == 2
    assert {r.status for r in _sla_rows(db)} == {"open"}

def test_sweep_respects_alert_cap(db, sink):
    cfg = PostmortemSlaConfig(max_alerts_per_sweep=1)
    _enter(db, NOW)
    recent = _enter(db, NOW + timedelta(hours=3))
    now = NOW + timedelta(hours=60)

    first = run_postmortem_sla_sweep(db, cfg, now=now, alert_sink=sink)
    assert first.alerts_created == 1
    assert sink.calls[0]["details"]["incident_key"] == recent
    assert run_postmortem_sla_sweep(db, cfg, now=now, alert_sink=sink).alerts_created == 1
    assert run_postmortem_sla_sweep(db, cfg, now=now, alert_sink=sink).alerts_created == 0

def test_sweep_without_ops(db, sink):
    _enter(db, NOW)
    summary = run_postmortem_sla_sweep(db, SLA, now=NOW + timedelta(hours=49), notify_ops=False, alert_sink=sink)
    assert summary.alerts_created == 1
    assert summary.ops_alerts_sent == summary.ops_alerts_failed == 0
    assert sink.calls == []

def test_sweep_counts_failed_delivery(db):
    _enter(db, NOW)
    failing = RecordingSink(delivered=False)
    summary = run_postmortem_sla_sweep(db, SLA, now=NOW + timedelta(hours=49), alert_sink=failing)
    assert summary.alerts_created == 1
    assert summary.ops_alerts_failed == 1
    assert len(_sla_rows(db)) == 1

def test_raising_sink_does_not_abort_sweep(db):
    _enter(db, NOW)
    _enter(db, NOW + timedelta(hours=2))
    calls = []
    def broken(source, severity, title, message, details=None):
        calls.append(details["incident_key"])
        raise RuntimeError("sink down")
    summary = run_postmortem_sla_sweep(db, SLA, now=NOW + timedelta(hours=100), alert_sink=broken)
    assert summary.alerts_created == 2
    assert summary.ops_alerts_failed == 2
    assert summary.ops_alerts_sent == 0
    assert len(calls) == 2
    assert len(_sla_rows(db)) == 2

def test_completed_incidents_are_not_swept(db, sink):
    key = _enter(db, NOW)
    record_postmortem_completion(db, incident_key=key, completed_by="ana", now=NOW + timedelta(hours=10))
    summary = run_postmortem_sla_sweep(db, SLA, now=NOW + timedelta(hours=100), alert_sink=sink)
    assert summary.overdue == 0
    assert summary.postmortems_completed == 1
    assert sink.calls == []

def test_disabled_sweep_does_nothing(db, sink):
    _enter(db, NOW)
    summary = run_postmortem_sla_sweep(db, PostmortemSlaConfig(enabled=False),
                                       now=NOW + timedelta(hours=100), alert_sink=sink)
    assert summary.enabled is False
    assert summary.scanned == 0
    assert _sla_rows(db) == []
