"""
Ops alert sink: a JSON webhook POST that never raises.

Repeated alerts with the same (source, severity, title) are suppressed for
OPS_ALERT_MIN_INTERVAL_SECONDS after a successful delivery.
"""
from __future__ import annotations
import logging
import os
from datetime import datetime
from threading import RLock
from typing import Any, Callable, Dict, Optional

import requests
from pydantic import BaseModel

from app.core.config import parse_integer
from app.metrics import ops_alerts_total
from app.utils.clock import utc_now
from app.utils.runtime_config import get_ops_webhook

log = logging.getLogger(__name__)

SEND_TIMEOUT_SEC = 5
_PRUNE_AFTER_SEC = 24 * 60 * 60

_lock = RLock()
_last_sent: Dict[str, datetime] = {}


class OpsAlertResult(BaseModel):
    delivered: bool
    reason: Optional[str] = None
    status_code: Optional[int] = None


# (source, severity, title, message, details) -> OpsAlertResult
AlertSink = Callable[..., OpsAlertResult]


def _min_interval_sec() -> int:
    return parse_integer(os.getenv("OPS_ALERT_MIN_INTERVAL_SECONDS"), 300, 0, 24 * 60 * 60)

def _dedupe_key(source: str, severity: str, title: str) -> str:
    return f"{source}|{severity}|{title}".lower()

def _rate_limited(key: str, now: datetime) -> bool:
    interval = _min_interval_sec()
    if interval <= 0:
        return False
    with _lock:
        last = _last_sent.get(key)
    return last is not None and (now - last).total_seconds() < interval

def _mark_sent(key: str, now: datetime) -> None:
    with _lock:
        _last_sent[key] = now
        for k, ts in list(_last_sent.items()):
            if (now - ts).total_seconds() > _PRUNE_AFTER_SEC:
                del _last_sent[k]

def reset_rate_limit_cache() -> None:
    with _lock:
        _last_sent.clear()


def _result(source: str, delivered: bool, reason: Optional[str] = None,
            status_code: Optional[int] = None) -> OpsAlertResult:
    ops_alerts_total.labels(source=source, outcome="delivered" if delivered else (reason or "failed")).inc()
    return OpsAlertResult(delivered=delivered, reason=reason, status_code=status_code)


def send_ops_alert(
    source: str,
    severity: str,
    title: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> OpsAlertResult:
    """POST the alert to the ops webhook. Resolves the webhook dynamically each call."""
    url = (get_ops_webhook() or os.getenv("OPS_ALERT_WEBHOOK_URL", "")).strip()
    if not url:
        log.info("[ops] webhook not set; skipping %s alert '%s'", severity, title)
        return _result(source, False, "webhook_not_configured")

    now = utc_now()
    key = _dedupe_key(source, severity, title)
    if _rate_limited(key, now):
        log.info("[ops] rate limited: %s", key)
        return _result(source, False, "rate_limited")

    payload = {
        "source": source,
        "severity": severity,
        "title": title,
        "message": message,
        "details": details or {},
        "sentAt": now.isoformat(),
    }
    try:
        r = requests.post(url, json=payload, timeout=SEND_TIMEOUT_SEC)
    except Exception as e:
        log.warning("[ops] send error: %s", e)
        return _result(source, False, type(e).__name__)

    if r.status_code >= 300:
        log.warning("[ops] POST status=%s body=%s", r.status_code, (r.text or "")[:300])
        return _result(source, False, f"http_{r.status_code}", r.status_code)

    _mark_sent(key, now)
    return _result(source, True, None, r.status_code)
