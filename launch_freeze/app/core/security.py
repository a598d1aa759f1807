import os, jwt
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Tuple

JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-prod")
JWT_ALGO = os.getenv("JWT_ALGO", "HS256")

# Access/refresh lifetimes (minutes)
ACCESS_TTL_MIN = int(os.getenv("JWT_ACCESS_TTL_MIN", "30"))
REFRESH_TTL_MIN = int(os.getenv("JWT_REFRESH_TTL_MIN", "10080"))

# lowest to highest privilege
ROLES: Tuple[str, ...] = ("viewer", "reviewer", "expert", "admin")

def _now() -> datetime:
    return datetime.now(timezone.utc)

def _make_token(username: str, role: str, kind: str, ttl_min: int) -> str:
    now = _now()
    payload = {
        "sub": username,
        "role": role,
        "type": kind,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_min)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGO)

def create_access_token(username: str, role: str) -> str:
    return _make_token(username, role, "access", ACCESS_TTL_MIN)

def create_refresh_token(username: str, role: str) -> str:
    return _make_token(username, role, "refresh", REFRESH_TTL_MIN)

def decode_token(token: str, expected_type: str | None = None) -> Dict[str, Any]:
    data = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    if expected_type and data.get("type") != expected_type:
        raise jwt.InvalidTokenError(f"unexpected token type: {data.get('type')}")
    if data.get("role") not in ROLES:
        raise jwt.InvalidTokenError(f"unknown role: {data.get('role')}")
    return data
