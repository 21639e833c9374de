import logging
import math
import os
from contextlib import closing
from typing import Optional

import psycopg2
import psycopg2.extras
from dotenv import load_dotenv
from fastapi import Cookie, Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError, jwt
from pydantic import BaseModel

from marketplace import app_context
from marketplace.app.config import load_subscription_config
from marketplace.app.feature_gates.context import ContentCreationContext, content_creation_gate
from marketplace.app.routes.admin import router as admin_router
from marketplace.app.routes.payments import router as payments_router
from marketplace.app.routes.subscriptions import router as subscriptions_router
from marketplace.app.routes.transactions import router as transactions_router
from marketplace.app.services.billing import get_expiry_scheduler
from marketplace.expiry import shutdown_expiry_scheduler, start_expiry_scheduler

load_dotenv()


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "marketplace_db"),
    user=os.getenv("DB_USER", "marketplace_user"),
    password=os.getenv("DB_PASSWORD", "marketplace_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

logger = logging.getLogger("marketplace")


def get_conn():
    return psycopg2.connect(**DB_CFG)


class SessionUser(BaseModel):
    id: str
    role: str = "user"
    kyc_status: Optional[str] = None


def get_user_by_id(user_id: str) -> Optional[SessionUser]:
    with closing(get_conn()) as conn, conn, conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as cur:
        cur.execute("SELECT id, role, kyc_status FROM users WHERE id = %s", (user_id,))
        row = cur.fetchone()
    if not row:
        return None
    return SessionUser(**dict(row))


def resolve_user_from_session_token(session_token: str) -> Optional[SessionUser]:
    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    if subject is None:
        return None
    return get_user_by_id(str(subject))


def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> SessionUser:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = resolve_user_from_session_token(session_token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


def get_current_admin(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> SessionUser:
    user = get_current_user(session_token=session_token)
    if user.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


app_context.configure(
    get_conn=get_conn,
    get_current_user=get_current_user,
    get_current_admin=get_current_admin,
)

app = FastAPI(title="Marketplace Subscriptions API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(subscriptions_router)
app.include_router(payments_router)
app.include_router(transactions_router)
app.include_router(admin_router)


@app.on_event("startup")
def start_subscription_expiry() -> None:
    config = load_subscription_config()
    if not config.expiry_enabled:
        logger.info("Subscription expiry scheduler disabled")
        return
    start_expiry_scheduler(get_expiry_scheduler(), hour=config.expiry_hour_utc)


@app.on_event("shutdown")
def stop_subscription_expiry() -> None:
    shutdown_expiry_scheduler()


@app.get("/api/metrics/subscription-expiry")
def subscription_expiry_metrics():
    return get_expiry_scheduler().get_metrics()


@app.get("/api/content/eligibility")
def content_eligibility(context: ContentCreationContext = Depends(content_creation_gate)):
    """Tell the client whether the current user may publish listings."""

    return {
        "allowed": True,
        "inGracePeriod": context.in_grace_period,
        "gracePeriodEndsAt": context.grace_period_ends_at,
    }
