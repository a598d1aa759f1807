from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.config import (
    FreezeConfig, PostmortemSlaConfig, resolve_freeze_config, resolve_postmortem_sla_config,
)
from app.core.database import get_db
from app.crud.metrics_source import MetricsSource, SqlMetricsSource
from app.crud.override import (
    apply_override, clear_override, decide_override_request, get_active_override,
    list_override_history, list_override_requests, submit_override_request,
)
from app.crud.postmortem import (
    get_postmortem_sla_summary, list_postmortem_incidents, record_postmortem_completion,
    run_postmortem_sla_sweep,
)
from app.deps.auth import CurrentUser, get_current_user, require_override_capability, require_role
from app.metrics import launch_checks_total
from app.schemas.override import OverrideDelta
from app.services.audit_sync import sync_launch_freeze_audit_state
from app.services.freeze import emit_launch_freeze_incident, evaluate_launch_freeze, should_block_launch

router = APIRouter(prefix="/api/launch-freeze", tags=["launch-freeze"])

ANY_ROLE = ("viewer", "reviewer", "expert", "admin")


# ---------------- dependencies (overridable in tests) ----------------

def get_freeze_config() -> FreezeConfig:
    return resolve_freeze_config()

def get_postmortem_config() -> PostmortemSlaConfig:
    return resolve_postmortem_sla_config()

def get_metrics_source(db: Session = Depends(get_db)) -> MetricsSource:
    return SqlMetricsSource(db)


# ---------------- state ----------------

@router.get("", response_model=dict)
def api_get_state(db: Session = Depends(get_db), cfg: FreezeConfig = Depends(get_freeze_config),
                  source: MetricsSource = Depends(get_metrics_source),
                  user=Depends(require_role(*ANY_ROLE))):
    state = evaluate_launch_freeze(db, cfg, source=source)
    return {"state": state}


class CheckIn(BaseModel):
    channels: Optional[List[str]] = None
    action: Optional[str] = None
    context: str = "launch"
    campaign_id: Optional[str] = None
    emit_incident: bool = False

@router.post("/check", response_model=dict)
def api_check(body: CheckIn, db: Session = Depends(get_db), cfg: FreezeConfig = Depends(get_freeze_config),
              source: MetricsSource = Depends(get_metrics_source),
              user: CurrentUser = Depends(require_role(*ANY_ROLE))):
    state = evaluate_launch_freeze(db, cfg, source=source)
    blocked = should_block_launch(state, body.channels, body.action)
    launch_checks_total.labels(outcome="blocked" if blocked else "allowed").inc()
    incident = None
    if blocked and body.emit_incident:
        incident = emit_launch_freeze_incident(db, state, context=body.context,
                                               actor=user.username, campaign_id=body.campaign_id)
    return {
        "blocked": blocked,
        "level": state.level,
        "reason_codes": list(state.reason_codes),
        "blocked_channels": list(state.blocked_channels),
        "blocked_actions": list(state.blocked_actions),
        "incident": incident,
    }


class SyncIn(BaseModel):
    notify_ops: bool = True

@router.post("/audit/sync", response_model=dict)
def api_audit_sync(body: SyncIn = SyncIn(), db: Session = Depends(get_db),
                   cfg: FreezeConfig = Depends(get_freeze_config),
                   source: MetricsSource = Depends(get_metrics_source),
                   user=Depends(require_role("expert", "admin"))):
    return {"summary": sync_launch_freeze_audit_state(db, cfg, source=source, notify_ops=body.notify_ops)}


# ---------------- overrides ----------------

@router.get("/override", response_model=dict)
def api_override_overview(limit: int = 20, db: Session = Depends(get_db),
                          user: CurrentUser = Depends(get_current_user)):
    capable = user.can_mutate_override
    return {
        "active": get_active_override(db),
        "history": list_override_history(db, limit=limit),
        "requests": list_override_requests(db, requested_by=None if capable else user.username, limit=limit),
        "can_mutate": capable,
    }


class OverrideIn(BaseModel):
    reason: str = Field(min_length=12, max_length=500)
    expires_at: Optional[datetime] = None
    override: OverrideDelta
    postmortem_url: Optional[str] = None
    incident_key: Optional[str] = None
    request_approval: bool = False

@router.post("/override", response_model=dict)
def api_override_apply(body: OverrideIn, response: Response, db: Session = Depends(get_db),
                       cfg: FreezeConfig = Depends(get_freeze_config),
                       user: CurrentUser = Depends(get_current_user)):
    """Capable roles apply directly; everyone else (or request_approval=true) files a request."""
    if body.request_approval or not user.can_mutate_override:
        res = submit_override_request(
            db, cfg, requested_by=user.username, requested_by_role=user.role,
            reason=body.reason, override=body.override, expires_at=body.expires_at,
            postmortem_url=body.postmortem_url, incident_key=body.incident_key,
        )
        response.status_code = 202 if res.submitted else 409
        return {"mode": "request", "result": res}

    res = apply_override(
        db, cfg, actor_id=user.username, reason=body.reason, override=body.override,
        expires_at=body.expires_at, postmortem_url=body.postmortem_url, incident_key=body.incident_key,
    )
    response.status_code = 201 if res.applied else 409
    return {"mode": "apply", "result": res}


class DecisionIn(BaseModel):
    request_id: int
    decision: Literal["approved", "rejected"]
    reason: str = Field(min_length=3, max_length=500)

@router.patch("/override", response_model=dict)
def api_override_decide(body: DecisionIn, response: Response, db: Session = Depends(get_db),
                        cfg: FreezeConfig = Depends(get_freeze_config),
                        user: CurrentUser = Depends(require_override_capability)):
    # not-found / conflict exceptions are mapped to 404 / 409 by the app
    res = decide_override_request(db, cfg, request_id=body.request_id, decision=body.decision,
                                  actor_id=user.username, reason=body.reason)
    if not res.decided:
        response.status_code = 409
    return {"result": res}


@router.delete("/override", response_model=dict)
def api_override_clear(reason: str = "Cleared by operator", db: Session = Depends(get_db),
                       user: CurrentUser = Depends(require_override_capability)):
    cleared = clear_override(db, actor_id=user.username, reason=reason)
    return {"cleared": cleared is not None, "override": cleared}


# ---------------- postmortems ----------------

@router.get("/postmortems", response_model=dict)
def api_postmortems(overdue_only: bool = False, db: Session = Depends(get_db),
                    cfg: PostmortemSlaConfig = Depends(get_postmortem_config),
                    user=Depends(require_role(*ANY_ROLE))):
    return {
        "summary": get_postmortem_sla_summary(db, cfg),
        "incidents": list_postmortem_incidents(db, cfg, overdue_only=overdue_only),
    }


class PostmortemIn(BaseModel):
    incident_key: str = Field(min_length=1, max_length=200)
    postmortem_url: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=4000)

@router.post("/postmortems", response_model=dict)
def api_postmortem_complete(body: PostmortemIn, response: Response, db: Session = Depends(get_db),
                            user: CurrentUser = Depends(require_role("reviewer", "expert", "admin"))):
    res = record_postmortem_completion(db, incident_key=body.incident_key, completed_by=user.username,
                                       postmortem_url=body.postmortem_url, notes=body.notes)
    response.status_code = 201 if res.created else 200
    return {"created": res.created, "record": res.record}


@router.post("/postmortems/sweep", response_model=dict)
def api_postmortem_sweep(body: SyncIn = SyncIn(), db: Session = Depends(get_db),
                         cfg: PostmortemSlaConfig = Depends(get_postmortem_config),
                         user=Depends(require_role("admin"))):
    return {"summary": run_postmortem_sla_sweep(db, cfg, notify_ops=body.notify_ops)}
