from __future__ import annotations
import os, json
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Dict, Any

# Default: launch_freeze/var/audit (override with env AUDIT_DIR)
_DEFAULT_DIR = Path(__file__).resolve().parents[2] / "var" / "audit"
AUDIT_DIR = Path(os.getenv("AUDIT_DIR", str(_DEFAULT_DIR)))

# request handlers and the monitor loop append concurrently
_write_lock = Lock()


def _event_day(event: Dict[str, Any]) -> str:
    ts = event.get("created_at")
    if isinstance(ts, str) and len(ts) >= 10:
        return ts[:10]
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def write_event(event: Dict[str, Any]) -> Path:
    """
    Append one freeze-log row to freeze-<day>.jsonl, where <day> is the row's own
    created_at date (UTC). Returns the file written to.
    """
    fp = AUDIT_DIR / f"freeze-{_event_day(event)}.jsonl"
    line = json.dumps(event, ensure_ascii=False, default=str)
    with _write_lock:
        AUDIT_DIR.mkdir(parents=True, exist_ok=True)
        with fp.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
    return fp
