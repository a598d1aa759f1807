"""
Override governance: time-bounded, validated relaxations of the baseline freeze policy.

Overrides, override requests and request decisions are rows in the freeze log.
Nothing is ever updated in place:

* the active override is a fold over override history (newest first, the first
  `cleared` entry or unexpired `active` entry wins);
* a request's status is a fold over the request row, its decision row
  (`ref_id` = request id) and its expiry.

An override may only make the controller *less* sensitive than the baseline:
thresholds >= baseline, blocked sets within the baseline sets, recovery
windows <= baseline. Anything else is rejected, never clamped.
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import (
    SUPPORTED_ACTIONS, SUPPORTED_CHANNELS, FreezeConfig, parse_integer, parse_number,
)
from app.crud.events import append_event, get_event, list_events
from app.metrics import override_ops_total
from app.models.event import (
    FreezeEvent, OVERRIDE_DECISION_SOURCE, OVERRIDE_REQUEST_SOURCE, OVERRIDE_SOURCE,
)
from app.schemas.override import (
    OverrideApplyResult, OverrideDecisionResult, OverrideDelta, OverrideRecord,
    OverrideRequestRecord, OverrideRequestResult,
)
from app.services.audit import mirror_events, record_event
from app.utils.clock import as_utc, iso, parse_iso, utc_now

log = logging.getLogger(__name__)

# Separation of duties: a requester may not approve their own request.
ALLOW_REQUESTER_TO_APPROVE = False

REASON_MIN_LEN = 12
REASON_MAX_LEN = 500
MAX_OVERRIDE_DAYS = 14
HISTORY_SCAN_LIMIT = 30


class OverrideRequestNotFound(LookupError):
    pass

class OverrideRequestConflict(ValueError):
    pass


# ---------------------------- pure helpers ----------------------------

def _enum_subset(raw: Any, supported: Sequence[str]) -> Optional[tuple]:
    if raw is None:
        return None
    items = raw if isinstance(raw, (list, tuple, set, frozenset)) else str(raw).split(",")
    out: List[str] = []
    for x in items:
        s = str(x).strip().lower()
        if s in supported and s not in out:
            out.append(s)
    return tuple(out) or None


def normalize_override_delta(raw: Optional[Mapping[str, Any]]) -> OverrideDelta:
    """Lenient parse of a stored/partial delta: clamp numbers, drop unknown channels/actions."""
    raw = raw if isinstance(raw, Mapping) else {}
    out: Dict[str, Any] = {}
    if raw.get("warning_burn_pct") is not None:
        out["warning_burn_pct"] = parse_number(raw["warning_burn_pct"], None, 1, 1000)
    if raw.get("critical_burn_pct") is not None:
        out["critical_burn_pct"] = parse_number(raw["critical_burn_pct"], None, 2, 2000)
    out["blocked_channels"] = _enum_subset(raw.get("blocked_channels"), SUPPORTED_CHANNELS)
    out["blocked_actions"] = _enum_subset(raw.get("blocked_actions"), SUPPORTED_ACTIONS)
    if raw.get("recovery_healthy_windows_required") is not None:
        out["recovery_healthy_windows_required"] = parse_integer(
            raw["recovery_healthy_windows_required"], None, 1, 24)
    return OverrideDelta(**{k: v for k, v in out.items() if v is not None})


def validate_override(delta: OverrideDelta, baseline: FreezeConfig) -> List[str]:
    """Empty list when the delta stays inside the baseline envelope."""
    errors: List[str] = []
    if delta.warning_burn_pct is not None and delta.warning_burn_pct < baseline.warning_burn_pct:
        errors.append("warning_burn_pct must be greater than or equal to baseline policy.")
    if delta.critical_burn_pct is not None and delta.critical_burn_pct < baseline.critical_burn_pct:
        errors.append("critical_burn_pct must be greater than or equal to baseline policy.")
    if delta.blocked_channels and not set(delta.blocked_channels) <= set(baseline.blocked_channels):
        errors.append("blocked_channels must be a subset of baseline blocked channels.")
    if delta.blocked_actions and not set(delta.blocked_actions) <= set(baseline.blocked_actions):
        errors.append("blocked_actions must be a subset of baseline blocked actions.")
    if (delta.recovery_healthy_windows_required is not None
            and delta.recovery_healthy_windows_required > baseline.recovery_healthy_windows_required):
        errors.append("recovery_healthy_windows_required cannot exceed baseline policy.")
    return errors


def apply_override_to_config(baseline: FreezeConfig, delta: Optional[OverrideDelta]) -> FreezeConfig:
    """Effective config: override fields where present, baseline elsewhere."""
    if delta is None or delta.is_empty():
        return baseline
    data = baseline.model_dump()
    if delta.warning_burn_pct is not None:
        data["warning_burn_pct"] = delta.warning_burn_pct
    if delta.critical_burn_pct is not None:
        data["critical_burn_pct"] = delta.critical_burn_pct
    if delta.blocked_channels:
        data["blocked_channels"] = delta.blocked_channels
    if delta.blocked_actions:
        data["blocked_actions"] = delta.blocked_actions
    if delta.recovery_healthy_windows_required is not None:
        data["recovery_healthy_windows_required"] = delta.recovery_healthy_windows_required
    # FreezeConfig re-normalizes critical to stay above warning
    return FreezeConfig(**data)


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    expires_at = as_utc(expires_at)
    return expires_at is not None and expires_at <= as_utc(now)


def resolve_active_override(history: Iterable[OverrideRecord], now: datetime) -> Optional[OverrideRecord]:
    """
    Fold over override history. Scans newest first regardless of input order;
    a `cleared` entry ends the scan with no override, expired entries are skipped.
    """
    ordered = sorted(history, key=lambda r: (as_utc(r.created_at), r.id), reverse=True)
    for rec in ordered:
        if rec.status == "cleared":
            return None
        if rec.status == "active" and not is_expired(rec.expires_at, now):
            return rec
    return None


def _check_submission(delta: OverrideDelta, baseline: FreezeConfig, reason: str,
                      expires_at: Optional[datetime], now: datetime) -> List[str]:
    errors: List[str] = []
    if delta.is_empty():
        errors.append("At least one override field is required.")
    n = len((reason or "").strip())
    if n < REASON_MIN_LEN or n > REASON_MAX_LEN:
        errors.append(f"reason must be between {REASON_MIN_LEN} and {REASON_MAX_LEN} characters.")
    if expires_at is not None:
        expires_at = as_utc(expires_at)
        if expires_at <= now:
            errors.append("expires_at must be in the future.")
        elif expires_at > now + timedelta(days=MAX_OVERRIDE_DAYS):
            errors.append(f"expires_at cannot be more than {MAX_OVERRIDE_DAYS} days ahead.")
    errors.extend(validate_override(delta, baseline))
    return errors


# ---------------------------- row <-> record ----------------------------

def _delta_dict(delta: OverrideDelta) -> Dict[str, Any]:
    d = delta.model_dump(exclude_none=True)
    for k in ("blocked_channels", "blocked_actions"):
        if k in d:
            d[k] = list(d[k])
    return d

def _override_record(row: FreezeEvent, now: Optional[datetime] = None) -> OverrideRecord:
    d = row.details or {}
    expires_at = parse_iso(d.get("expires_at"))
    status = row.status if row.status in ("active", "cleared") else "active"
    if status == "active" and now is not None and is_expired(expires_at, now):
        status = "expired"
    return OverrideRecord(
        id=row.id,
        actor_id=row.actor,
        reason=d.get("reason") or row.message or "",
        created_at=as_utc(row.created_at),
        expires_at=expires_at,
        postmortem_url=d.get("postmortem_url"),
        incident_key=row.incident_key,
        override=normalize_override_delta(d.get("override")),
        status=status,
        superseded_id=d.get("superseded_id"),
    )

def _request_record(row: FreezeEvent, decision: Optional[FreezeEvent], now: datetime) -> OverrideRequestRecord:
    d = row.details or {}
    expires_at = parse_iso(d.get("expires_at"))
    fields: Dict[str, Any] = {}
    if decision is not None and decision.status in ("approved", "rejected"):
        dd = decision.details or {}
        fields = dict(
            status=decision.status,
            decided_at=as_utc(decision.created_at),
            decided_by=decision.actor,
            decision_reason=dd.get("reason"),
            applied_override_id=dd.get("applied_override_id"),
        )
    elif is_expired(expires_at, now):
        fields = dict(status="expired")
    return OverrideRequestRecord(
        id=row.id,
        requested_by=row.actor,
        requested_by_role=d.get("requested_by_role"),
        reason=d.get("reason") or row.message or "",
        submitted_at=as_utc(row.created_at),
        expires_at=expires_at,
        postmortem_url=d.get("postmortem_url"),
        incident_key=row.incident_key,
        override=normalize_override_delta(d.get("override")),
        **fields,
    )


# ---------------------------- overrides ----------------------------

def list_override_history(db: Session, limit: int = 20, now: Optional[datetime] = None) -> List[OverrideRecord]:
    """Newest first; `expired` is derived at read time."""
    now = as_utc(now) or utc_now()
    return [_override_record(r, now) for r in list_events(db, OVERRIDE_SOURCE, limit=limit)]


def get_active_override(db: Session, now: Optional[datetime] = None) -> Optional[OverrideRecord]:
    now = as_utc(now) or utc_now()
    rows = list_events(db, OVERRIDE_SOURCE, limit=HISTORY_SCAN_LIMIT)
    return resolve_active_override([_override_record(r) for r in rows], now)


def _stage_override(db: Session, *, actor_id: Optional[str], reason: str, delta: OverrideDelta,
                    expires_at: Optional[datetime], postmortem_url: Optional[str],
                    incident_key: Optional[str], now: datetime,
                    request_id: Optional[int] = None) -> FreezeEvent:
    previous = get_active_override(db, now)
    return append_event(
        db, OVERRIDE_SOURCE,
        event="applied", status="active", severity="warning",
        incident_key=incident_key, ref_id=request_id, actor=actor_id,
        title="Launch freeze override applied",
        message=reason,
        details={
            "reason": reason,
            "expires_at": iso(expires_at),
            "postmortem_url": postmortem_url,
            "override": _delta_dict(delta),
            "request_id": request_id,
            "superseded_id": previous.id if previous else None,
        },
        created_at=now,
    )


def apply_override(
    db: Session,
    baseline: FreezeConfig,
    *,
    actor_id: Optional[str],
    reason: str,
    override: OverrideDelta,
    expires_at: Optional[datetime],
    postmortem_url: Optional[str] = None,
    incident_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OverrideApplyResult:
    """Validate then persist a new active override. Rejections write nothing."""
    now = as_utc(now) or utc_now()
    errors = _check_submission(override, baseline, reason, expires_at, now)
    if errors:
        override_ops_total.labels(operation="apply", outcome="rejected").inc()
        log.info("[override] apply rejected actor=%s errors=%s", actor_id, errors)
        return OverrideApplyResult(applied=False, errors=errors)

    row = _stage_override(db, actor_id=actor_id, reason=reason.strip(), delta=override,
                          expires_at=expires_at, postmortem_url=postmortem_url,
                          incident_key=incident_key, now=now)
    db.commit()
    db.refresh(row)
    mirror_events([row])
    override_ops_total.labels(operation="apply", outcome="applied").inc()
    log.info("[override] applied id=%s actor=%s expires_at=%s", row.id, actor_id, iso(expires_at))
    return OverrideApplyResult(applied=True, override=_override_record(row, now))


def clear_override(db: Session, *, actor_id: Optional[str], reason: str,
                   now: Optional[datetime] = None) -> Optional[OverrideRecord]:
    """Append a `cleared` entry. Returns None (and writes nothing) when no override is active."""
    now = as_utc(now) or utc_now()
    active = get_active_override(db, now)
    if active is None:
        override_ops_total.labels(operation="clear", outcome="noop").inc()
        return None
    row = record_event(
        db, OVERRIDE_SOURCE,
        event="cleared", status="cleared", severity="info",
        incident_key=active.incident_key, actor=actor_id,
        title="Launch freeze override cleared",
        message=reason,
        details={"reason": reason, "superseded_id": active.id},
        created_at=now,
    )
    override_ops_total.labels(operation="clear", outcome="cleared").inc()
    log.info("[override] cleared id=%s by=%s", active.id, actor_id)
    return _override_record(row, now)


# ---------------------------- requests ----------------------------

def submit_override_request(
    db: Session,
    baseline: FreezeConfig,
    *,
    requested_by: Optional[str],
    requested_by_role: Optional[str],
    reason: str,
    override: OverrideDelta,
    expires_at: Optional[datetime],
    postmortem_url: Optional[str] = None,
    incident_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OverrideRequestResult:
    now = as_utc(now) or utc_now()
    errors = _check_submission(override, baseline, reason, expires_at, now)
    if errors:
        override_ops_total.labels(operation="request", outcome="rejected").inc()
        return OverrideRequestResult(submitted=False, errors=errors)

    row = record_event(
        db, OVERRIDE_REQUEST_SOURCE,
        event="requested", status="pending", severity="info",
        incident_key=incident_key, actor=requested_by,
        title="Launch freeze override requested",
        message=reason.strip(),
        details={
            "reason": reason.strip(),
            "requested_by_role": requested_by_role,
            "expires_at": iso(expires_at),
            "postmortem_url": postmortem_url,
            "override": _delta_dict(override),
        },
        created_at=now,
    )
    override_ops_total.labels(operation="request", outcome="submitted").inc()
    log.info("[override] request %s submitted by %s", row.id, requested_by)
    return OverrideRequestResult(submitted=True, request=_request_record(row, None, now))


def _decisions_for(db: Session, request_ids: List[int]) -> Dict[int, FreezeEvent]:
    if not request_ids:
        return {}
    rows = (
        db.query(FreezeEvent)
        .filter(FreezeEvent.source == OVERRIDE_DECISION_SOURCE, FreezeEvent.ref_id.in_(request_ids))
        .order_by(FreezeEvent.created_at.asc(), FreezeEvent.id.asc())
        .all()
    )
    out: Dict[int, FreezeEvent] = {}
    for r in rows:
        out.setdefault(r.ref_id, r)   # first decision is the binding one
    return out


def list_override_requests(
    db: Session,
    *,
    statuses: Optional[Iterable[str]] = None,
    requested_by: Optional[str] = None,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> List[OverrideRequestRecord]:
    now = as_utc(now) or utc_now()
    rows = list_events(db, OVERRIDE_REQUEST_SOURCE, limit=limit)
    if requested_by is not None:
        rows = [r for r in rows if r.actor == requested_by]
    decisions = _decisions_for(db, [r.id for r in rows])
    records = [_request_record(r, decisions.get(r.id), now) for r in rows]
    wanted = set(statuses or [])
    return [r for r in records if r.status in wanted] if wanted else records


def get_override_request(db: Session, request_id: int,
                         now: Optional[datetime] = None) -> Optional[OverrideRequestRecord]:
    now = as_utc(now) or utc_now()
    row = get_event(db, request_id, source=OVERRIDE_REQUEST_SOURCE)
    if row is None:
        return None
    return _request_record(row, _decisions_for(db, [row.id]).get(row.id), now)


def decide_override_request(
    db: Session,
    baseline: FreezeConfig,
    *,
    request_id: int,
    decision: str,
    actor_id: Optional[str],
    reason: str,
    now: Optional[datetime] = None,
) -> OverrideDecisionResult:
    """
    Approve or reject a pending request. Approval re-validates against the current
    baseline and writes the override and the decision in one transaction.
    """
    now = as_utc(now) or utc_now()
    if decision not in ("approved", "rejected"):
        raise ValueError("decision must be 'approved' or 'rejected'")

    req = get_override_request(db, request_id, now)
    if req is None:
        raise OverrideRequestNotFound("Override request not found")
    if req.status == "expired":
        raise OverrideRequestConflict("Override request is expired")
    if req.status != "pending":
        raise OverrideRequestConflict(f"Override request is already {req.status}")
    if decision == "approved" and not ALLOW_REQUESTER_TO_APPROVE and actor_id and actor_id == req.requested_by:
        raise OverrideRequestConflict("Requester cannot approve their own override request")

    if decision == "approved":
        errors = validate_override(req.override, baseline)
        if errors:
            override_ops_total.labels(operation="decide", outcome="rejected").inc()
            return OverrideDecisionResult(
                decided=False, request=req,
                errors=[f"Cannot approve override request: {' '.join(errors)}"],
            )

    staged: List[FreezeEvent] = []
    override_row: Optional[FreezeEvent] = None
    try:
        if decision == "approved":
            override_row = _stage_override(
                db, actor_id=actor_id, reason=f"Approved request {req.id}: {reason}",
                delta=req.override, expires_at=req.expires_at, postmortem_url=req.postmortem_url,
                incident_key=req.incident_key, now=now, request_id=req.id,
            )
            staged.append(override_row)

        staged.append(append_event(
            db, OVERRIDE_DECISION_SOURCE,
            event="decided", status=decision, severity="info",
            incident_key=req.incident_key, ref_id=req.id, actor=actor_id,
            title=f"Launch freeze override request {decision}",
            message=reason,
            details={"reason": reason, "applied_override_id": override_row.id if override_row else None},
            dedupe_key=f"{OVERRIDE_DECISION_SOURCE}:{req.id}",
            created_at=now,
        ))
        db.commit()
    except IntegrityError:
        # someone else decided this request first; nothing of ours was kept
        db.rollback()
        current = get_override_request(db, request_id, now)
        raise OverrideRequestConflict(f"Override request is already {current.status if current else 'decided'}")

    for row in staged:
        db.refresh(row)
    mirror_events(staged)
    override_ops_total.labels(operation="decide", outcome=decision).inc()
    log.info("[override] request %s %s by %s", req.id, decision, actor_id)
    return OverrideDecisionResult(
        decided=True,
        request=get_override_request(db, request_id, now),
        applied_override=_override_record(override_row, now) if override_row is not None else None,
    )
