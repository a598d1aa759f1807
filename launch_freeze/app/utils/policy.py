# app/utils/policy.py
from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

# Where to read the policy file (compose sets POLICY_PATH; keep this default as a fallback)
_DEFAULT_PATH = Path(__file__).resolve().parents[2] / "policies" / "policy.yaml"
POLICY_PATH = Path(os.getenv("POLICY_PATH", str(_DEFAULT_PATH)))

# cache in memory
_POLICY: Optional[dict] = None


# -------------------------- loading --------------------------

def _load_policy_from_file(path: Optional[Path] = None) -> dict:
    fp = path or POLICY_PATH
    if fp.exists():
        with open(fp, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                return {}
            return data
    return {}

def get_policy() -> dict:
    global _POLICY
    if _POLICY is None:
        _POLICY = _load_policy_from_file()
    return _POLICY

def reload_policy() -> dict:
    global _POLICY
    _POLICY = _load_policy_from_file()
    return _POLICY


def launch_freeze_section(pol: Optional[dict] = None) -> Dict[str, Any]:
    """The `launch_freeze:` block of the policy file, or {} when absent/malformed."""
    pol = get_policy() if pol is None else pol
    val = (pol or {}).get("launch_freeze")
    return val if isinstance(val, dict) else {}
