from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from app.api.launch_freeze import get_freeze_config, get_metrics_source
from app.core.config import FreezeConfig
from app.core.security import create_access_token
from app.utils.clock import utc_now
from launch_freeze.main import app as api
from conftest import critical_source, healthy_source


def auth(username, role):
    return {"Authorization": f"Bearer {create_access_token(username, role)}"}

VIEWER = auth("vic", "viewer")
REVIEWER = auth("rey", "reviewer")
ADMIN = auth("ada", "admin")


@pytest.fixture
def metrics():
    return {"source": healthy_source(utc_now())}

@pytest.fixture
def client(db, metrics):
    api.dependency_overrides[get_metrics_source] = lambda: metrics["source"]
    api.dependency_overrides[get_freeze_config] = lambda: FreezeConfig()
    with TestClient(api) as c:
        yield c
    api.dependency_overrides.clear()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert "freeze_events" in r.json()["tables"]

def test_requires_token(client):
    assert client.get("/api/launch-freeze").status_code == 401
    assert client.get("/api/launch-freeze", headers={"Authorization": "Bearer nope"}).status_code == 401

def test_login_roles(client):
    assert client.post("/auth/login", json={"username": "x", "role": "root"}).status_code == 400
    r = client.post("/auth/login", json={"username": "x", "role": "Reviewer"})
    assert r.status_code == 200
    token = r.json()["access_token"]
    assert client.get("/api/launch-freeze", headers={"Authorization": f"Bearer {token}"}).status_code == 200

def test_state_and_check(client, metrics):
    r = client.get("/api/launch-freeze", headers=VIEWER)
    assert r.status_code == 200
    assert r.json()["state"]["active"] is False

    metrics["source"] = critical_source(utc_now())
    state = client.get("/api/launch-freeze", headers=VIEWER).json()["state"]
    assert state["active"] is True
    assert "publish_burn_critical_24h" in state["reason_codes"]

    r = client.post("/api/launch-freeze/check", headers=VIEWER,
                    json={"channels": ["pinterest"], "action": "scale", "emit_incident": True,
                          "campaign_id": "spring-drop"})
    body = r.json()
    assert body["blocked"] is True
    assert body["level"] == "critical"
    assert body["incident"]["notification_id"] is not None
    assert body["incident"]["ops_reason"] == "webhook_not_configured"

def test_audit_sync_endpoint(client, metrics):
    metrics["source"] = critical_source(utc_now())
    assert client.post("/api/launch-freeze/audit/sync", headers=VIEWER, json={}).status_code == 403
    r = client.post("/api/launch-freeze/audit/sync", headers=ADMIN, json={"notify_ops": False})
    assert r.status_code == 200
    assert r.json()["summary"]["event"] == "entered"
    again = client.post("/api/launch-freeze/audit/sync", headers=ADMIN, json={"notify_ops": False})
    assert again.json()["summary"]["changed"] is False


def _override_body(**delta):
    return {
        "reason": "Vendor outage, publish retries are noisy",
        "expires_at": (utc_now() + timedelta(days=1)).isoformat(),
        "override": delta,
    }

def test_override_request_and_approval(client):
    r = client.post("/api/launch-freeze/override", headers=VIEWER, json=_override_body(warning_burn_pct=70))
    assert r.status_code == 202
    assert r.json()["mode"] == "request"
    request_id = r.json()["result"]["request"]["id"]

    decision = {"request_id": request_id, "decision": "approved", "reason": "Reviewed with on-call"}
    assert client.patch("/api/launch-freeze/override", headers=VIEWER, json=decision).status_code == 403
    r = client.patch("/api/launch-freeze/override", headers=ADMIN, json=decision)
    assert r.status_code == 200
    assert r.json()["result"]["request"]["status"] == "approved"
    assert client.patch("/api/launch-freeze/override", headers=ADMIN, json=decision).status_code == 409

    overview = client.get("/api/launch-freeze/override", headers=ADMIN).json()
    assert overview["can_mutate"] is True
    assert overview["active"]["override"]["warning_burn_pct"] == 70

    mine = client.get("/api/launch-freeze/override", headers=REVIEWER).json()
    assert mine["can_mutate"] is False
    assert mine["requests"] == []

    r = client.delete("/api/launch-freeze/override", headers=ADMIN, params={"reason": "Vendor recovered"})
    assert r.json()["cleared"] is True
    assert client.get("/api/launch-freeze/override", headers=ADMIN).json()["active"] is None

def test_override_without_expiry(client):
    body = {"reason": "Holiday campaign, widen warning band", "override": {"warning_burn_pct": 60}}
    r = client.post("/api/launch-freeze/override", headers=ADMIN, json=body)
    assert r.status_code == 201
    assert r.json()["result"]["override"]["expires_at"] is None

    active = client.get("/api/launch-freeze/override", headers=ADMIN).json()["active"]
    assert active["override"]["warning_burn_pct"] == 60
    assert active["expires_at"] is None

def test_unknown_request_is_404(client):
    decision = {"request_id": 12345, "decision": "rejected", "reason": "n/a"}
    assert client.patch("/api/launch-freeze/override", headers=ADMIN, json=decision).status_code == 404

def test_direct_apply_outside_envelope(client):
    r = client.post("/api/launch-freeze/override", headers=ADMIN, json=_override_body(warning_burn_pct=40))
    assert r.status_code == 409
    assert r.json()["result"]["applied"] is False
    assert r.json()["result"]["errors"]

    r = client.post("/api/launch-freeze/override", headers=ADMIN, json=_override_body(warning_burn_pct=60))
    assert r.status_code == 201
    assert r.json()["result"]["override"]["status"] == "active"


def test_postmortem_completion(client):
    body = {"incident_key": "launch-freeze:2026-03-02T12", "notes": "Vendor timeout cascade"}
    assert client.post("/api/launch-freeze/postmortems", headers=VIEWER, json=body).status_code == 403
    assert client.post("/api/launch-freeze/postmortems", headers=REVIEWER, json=body).status_code == 201
    r = client.post("/api/launch-freeze/postmortems", headers=REVIEWER, json=body)
    assert r.status_code == 200
    assert r.json()["created"] is False

    listing = client.get("/api/launch-freeze/postmortems", headers=VIEWER).json()
    assert listing["summary"]["overdue"] == 0

def test_postmortem_sweep_admin_only(client):
    assert client.post("/api/launch-freeze/postmortems/sweep", headers=REVIEWER, json={}).status_code == 403
    r = client.post("/api/launch-freeze/postmortems/sweep", headers=ADMIN, json={})
    assert r.status_code == 200
    assert r.json()["summary"]["alerts_created"] == 0

def test_metrics_and_policy(client):
    client.get("/api/launch-freeze", headers=VIEWER)
    text = client.get("/metrics").text
    assert "launch_freeze_evaluations_total" in text
    assert "launch_freeze_active" in text

    policy = client.get("/api/policy", headers=VIEWER).json()
    assert policy["effective"]["freeze"]["warning_burn_pct"] == 50
    assert "admin" in policy["effective"]["override_allowed_roles"]

def test_monitor_pass(client):
    r = client.post("/admin/monitor/run", headers=ADMIN)
    assert r.status_code == 200
    assert "audit" in r.json()
    assert "postmortem" in r.json()

def test_ops_webhook_config(client):
    assert client.post("/config/ops-webhook", headers=ADMIN, json={"webhook_url": "ftp://x"}).status_code == 400
    r = client.post("/config/ops-webhook", headers=ADMIN,
                    json={"webhook_url": "https://hooks.example.com/services/T000/B000/secret"})
    assert r.json() == {"saved": True}
    preview = client.get("/config/ops-webhook", headers=ADMIN).json()
    assert preview["configured"] is True
    assert "secret" not in preview["webhook_url_preview"]
