from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel
from typing import Callable
import jwt

from app.core.config import can_mutate_override, resolve_override_allowed_roles
from app.core.security import decode_token

class CurrentUser(BaseModel):
    username: str
    role: str

    @property
    def can_mutate_override(self) -> bool:
        return can_mutate_override(self.role, resolve_override_allowed_roles())

def get_current_user(authorization: str | None = Header(default=None)) -> CurrentUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        data = decode_token(token, expected_type="access")
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Invalid/expired token")
    return CurrentUser(username=data.get("sub", "unknown"), role=data.get("role", "viewer"))

def require_role(*allowed: str) -> Callable:
    def checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if allowed and user.role not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user
    return checker

def require_override_capability(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Roles listed in LAUNCH_FREEZE_OVERRIDE_ALLOWED_ROLES (admin always)."""
    if not user.can_mutate_override:
        raise HTTPException(status_code=403, detail="Role cannot mutate launch freeze overrides")
    return user
