import os
from threading import RLock
from typing import Dict, Optional

# Settings an admin may change without a restart. Seeded from the environment on
# boot; every reader goes through get_* so a change applies to the next alert.
OPS_WEBHOOK_KEY = "OPS_ALERT_WEBHOOK_URL"

_lock = RLock()
_settings: Dict[str, str] = {
    OPS_WEBHOOK_KEY: os.getenv(OPS_WEBHOOK_KEY, "").strip(),
}


def set_ops_webhook(url: Optional[str]) -> None:
    with _lock:
        _settings[OPS_WEBHOOK_KEY] = (url or "").strip()

def get_ops_webhook() -> str:
    with _lock:
        return _settings.get(OPS_WEBHOOK_KEY, "")

def masked_ops_webhook(keep: int = 20) -> Optional[str]:
    """Enough of the URL to recognise it in the admin UI, never the token part."""
    url = get_ops_webhook()
    if not url:
        return None
    return url if len(url) <= keep else url[:keep] + "…"
