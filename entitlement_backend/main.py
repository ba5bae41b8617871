import logging
import os
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Optional

from fastapi import Cookie, Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
import psycopg2
from dotenv import load_dotenv
from jose import JWTError, jwt

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

from entitlement_backend import app_context  # noqa: E402
from entitlement_backend.app.routes.packages import router as packages_router  # noqa: E402
from entitlement_backend.app.routes.vouchers import router as vouchers_router  # noqa: E402
from entitlement_backend.config import load_engine_config  # noqa: E402
from entitlement_backend.scheduler import (  # noqa: E402
    get_sweep_metrics,
    shutdown_sweep_scheduler,
    start_sweep_scheduler,
)


load_dotenv()

ENGINE_CONFIG = load_engine_config()
DB_CFG = ENGINE_CONFIG.db_settings()

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
SITE_ADMIN_ROLES = {"admin"}

logger = logging.getLogger("packages")


def get_conn():
    return psycopg2.connect(**DB_CFG)


def resolve_user_from_session_token(token: str) -> Optional[SimpleNamespace]:
    try:
        payload = jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    if not subject:
        return None
    return SimpleNamespace(id=str(subject), email=payload.get("email"), role=payload.get("role"))


def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> SimpleNamespace:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = resolve_user_from_session_token(session_token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


def is_admin(user) -> bool:
    return getattr(user, "role", None) in SITE_ADMIN_ROLES


app_context.configure(get_conn=get_conn, get_current_user=get_current_user)

app = FastAPI(title="Package Entitlements API")

# Vite proxy origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(packages_router)
app.include_router(vouchers_router)


@app.on_event("startup")
def start_sweeps() -> None:
    if ENGINE_CONFIG.sweep_scheduler_enabled:
        start_sweep_scheduler()
    else:
        logger.info("Sweep scheduler disabled by configuration")


@app.on_event("shutdown")
def stop_sweeps() -> None:
    shutdown_sweep_scheduler()


@app.get("/api/health")
def health():
    return {"ok": True}


@app.get("/api/admin/sweeps")
def sweep_metrics(current_user=Depends(get_current_user)):
    if not is_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return get_sweep_metrics()
