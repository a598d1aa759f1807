from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy.orm import Session
from sqlalchemy import text, inspect
from pydantic import BaseModel
from datetime import datetime, timezone
import asyncio, logging, os, uvicorn

from app.core.database import get_db, engine, Base, SessionLocal
from app.core.config import (
    resolve_freeze_config, resolve_postmortem_sla_config, resolve_override_allowed_roles, parse_bool,
)
from app.core.security import create_access_token, create_refresh_token, decode_token, ACCESS_TTL_MIN, ROLES
from app.deps.auth import require_role
from app.crud.override import OverrideRequestConflict, OverrideRequestNotFound
from app.crud.postmortem import run_postmortem_sla_sweep
from app.services.audit_sync import sync_launch_freeze_audit_state
from app.utils.policy import get_policy, reload_policy, launch_freeze_section
from app.utils.runtime_config import get_ops_webhook, masked_ops_webhook, set_ops_webhook
from app.utils.audit_sink import AUDIT_DIR
from app.metrics import init_metrics_zero
from app.api.launch_freeze import router as launch_freeze_router
from app.models import FreezeEvent, PromotionEvent, ModerationTask, SyncRun  # noqa: F401  (register tables)

log = logging.getLogger("launch_freeze")

MONITOR_ENABLED = parse_bool(os.getenv("MONITOR_ENABLED", "1"), True)
MONITOR_INTERVAL_SEC = int(os.getenv("MONITOR_INTERVAL_SEC", "300"))

_scheduler_task = None  # asyncio.Task

# FastAPI app
app = FastAPI(
    title="Launch Freeze Controller API",
    description="SLO burn-rate launch freeze with override governance and postmortem SLA tracking",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], allow_credentials=True,
    allow_methods=["*"], allow_headers=["*"],
)

app.include_router(launch_freeze_router)

@app.on_event("startup")
def on_startup():
    log.info("Database: %s (%s)", engine.url.render_as_string(hide_password=True), engine.name)
    Base.metadata.create_all(bind=engine)
    log.info("Tables now: %s", inspect(engine).get_table_names())
    log.info("Audit mirror dir: %s", AUDIT_DIR)
    init_metrics_zero()

    global _scheduler_task
    if MONITOR_ENABLED:
        log.info("[monitor] enabled; interval=%ss", MONITOR_INTERVAL_SEC)
        loop = asyncio.get_event_loop()
        _scheduler_task = loop.create_task(_monitor_loop())
    else:
        log.info("[monitor] disabled by MONITOR_ENABLED=0")

@app.on_event("shutdown")
def on_shutdown():
    global _scheduler_task
    if _scheduler_task:
        _scheduler_task.cancel()
        _scheduler_task = None


@app.exception_handler(OverrideRequestNotFound)
async def not_found_handler(request: Request, exc: OverrideRequestNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(OverrideRequestConflict)
async def conflict_handler(request: Request, exc: OverrideRequestConflict):
    return JSONResponse(status_code=409, content={"detail": str(exc)})

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "database": "connected",
            "tables": inspect(engine).get_table_names(),
            "monitor_enabled": MONITOR_ENABLED,
            "timestamp": datetime.now(timezone.utc),
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "database": "disconnected",
            "error": str(e),
            "timestamp": datetime.now(timezone.utc),
        }

@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------- auth ----------------

class LoginIn(BaseModel):
    username: str
    role: str

@app.post("/auth/login")
def auth_login(body: LoginIn):
    role = body.role.lower()
    if role not in ROLES:
        raise HTTPException(400, f"role must be {'|'.join(ROLES)}")
    access = create_access_token(body.username, role)
    refresh = create_refresh_token(body.username, role)
    return {"access_token": access, "refresh_token": refresh, "token_type": "bearer", "expires_in": ACCESS_TTL_MIN * 60, "role": role, "username": body.username}

class RefreshIn(BaseModel):
    refresh_token: str

@app.post("/auth/refresh")
def auth_refresh(body: RefreshIn):
    try:
        data = decode_token(body.refresh_token, expected_type="refresh")
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid/expired refresh token")
    new_access = create_access_token(data["sub"], data.get("role", "viewer"))
    return {"access_token": new_access, "token_type": "bearer", "expires_in": ACCESS_TTL_MIN * 60}


# ---------------- policy / runtime config ----------------

@app.get("/api/policy", response_model=dict)
def api_policy(user=Depends(require_role(*ROLES))):
    return {
        "policy": get_policy(),
        "effective": {
            "freeze": resolve_freeze_config(),
            "postmortem_sla": resolve_postmortem_sla_config(),
            "override_allowed_roles": sorted(resolve_override_allowed_roles()),
        },
    }

@app.post("/api/policy/reload", response_model=dict)
def api_policy_reload(user=Depends(require_role("admin"))):
    p = reload_policy()
    return {"status": "reloaded", "launch_freeze_keys": sorted(launch_freeze_section(p).keys())}

class OpsWebhookIn(BaseModel):
    webhook_url: str

@app.post("/config/ops-webhook", response_model=dict)
def api_set_ops_webhook(body: OpsWebhookIn, user=Depends(require_role("admin"))):
    url = body.webhook_url.strip()
    if not url.startswith(("https://", "http://")):
        raise HTTPException(status_code=400, detail="Invalid webhook URL")
    set_ops_webhook(url)
    return {"saved": True}

@app.get("/config/ops-webhook", response_model=dict)
def api_get_ops_webhook(user=Depends(require_role("expert", "admin"))):
    return {"configured": bool(get_ops_webhook()), "webhook_url_preview": masked_ops_webhook()}


# ---------------- periodic monitor ----------------

def _run_monitor_pass(db: Session) -> dict:
    """One tick: audit sync, then the postmortem SLA sweep. Config is re-resolved each pass."""
    out = {}
    try:
        out["audit"] = sync_launch_freeze_audit_state(db, resolve_freeze_config())
    except Exception as e:
        db.rollback()
        log.exception("[monitor] audit sync failed: %s", e)
        out["audit_error"] = str(e)
    try:
        out["postmortem"] = run_postmortem_sla_sweep(db, resolve_postmortem_sla_config())
    except Exception as e:
        db.rollback()
        log.exception("[monitor] postmortem sweep failed: %s", e)
        out["postmortem_error"] = str(e)
    return out

@app.post("/admin/monitor/run", response_model=dict)
def admin_monitor_run(user=Depends(require_role("admin"))):
    result = _monitor_once()
    return {"ran": True, "interval_sec": MONITOR_INTERVAL_SEC, **result}

def _monitor_once() -> dict:
    db = SessionLocal()
    try:
        return _run_monitor_pass(db)
    finally:
        db.close()

async def _monitor_loop():
    while True:
        try:
            _monitor_once()
        except Exception as e:
            log.error("[monitor] pass error: %s", e)
        await asyncio.sleep(MONITOR_INTERVAL_SEC)


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    uvicorn.run(app, host="0.0.0.0", port=8000)
