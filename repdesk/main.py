# Copyright (c) 2026 Mohammed Hassan. All rights reserved.
# Proprietary and confidential. Unauthorized copying, modification, distribution, or use is prohibited.

import logging
import datetime
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import settings
from .db import engine, SessionLocal
from .errors import register_error_handlers
from .logging_setup import RequestIdMiddleware, setup_logging, log_event
from .models import Base, User
from .security.auth import get_password_hash
from .routes import auth, orgs, locations, webhooks, integrations, reviews, inbox, comments, dashboard
from .services.scheduler import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

def startup_warnings() -> list[str]:
    """Settings that are missing or unsafe for a production deploy."""
    problems = []
    if not settings.meta_app_secret:
        problems.append("META_APP_SECRET (webhooks will answer 500)")
    if not settings.meta_webhook_verify_token:
        problems.append("META_WEBHOOK_VERIFY_TOKEN (subscription handshake will fail)")
    if not settings.openai_api_key:
        problems.append("OPENAI_API_KEY (AI reply drafts disabled)")
    if settings.secret_key == "change-me-in-production-for-jwt":
        problems.append("SECRET_KEY (using default insecure key)")
    if settings.database_url.startswith("sqlite"):
        problems.append("DATABASE_URL (SQLite; production Postgres required)")
    return problems

app = FastAPI(title="Reputation Desk")
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")
app.add_middleware(RequestIdMiddleware)
register_error_handlers(app)

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error", "type": type(exc).__name__},
    )

@app.get("/health")
def health():
    return {
        "status": "ok",
        "version": VERSION,
        "now": datetime.datetime.now(datetime.timezone.utc).isoformat()
    }

@app.get("/ready")
def readiness_check():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT id FROM users LIMIT 1"))
        return {"status": "ready"}
    except SQLAlchemyError:
        return JSONResponse(status_code=503, content={"status": "not_ready", "detail": "Database migrations pending or DB unreachable."})

app.include_router(auth.router)
app.include_router(orgs.router)
app.include_router(locations.router)
app.include_router(webhooks.router)
app.include_router(integrations.router)
app.include_router(reviews.router)
app.include_router(inbox.router)
app.include_router(comments.router)
app.include_router(dashboard.router)

def bootstrap_superadmin():
    """Seed the platform superadmin from SUPERADMIN_EMAIL / SUPERADMIN_PASSWORD."""
    if not settings.superadmin_email or not settings.superadmin_password:
        return
    db = SessionLocal()
    try:
        if db.query(User).filter(User.is_superadmin == True).first():
            return
        db.add(User(
            email=settings.superadmin_email,
            password_hash=get_password_hash(settings.superadmin_password),
            is_superadmin=True,
            is_active=True,
            name="Platform Superadmin"
        ))
        db.commit()
        log_event("bootstrap_superadmin_created", email=settings.superadmin_email)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Superadmin bootstrap failed")
    finally:
        db.close()

@app.on_event("startup")
def on_startup():
    setup_logging()
    problems = startup_warnings()
    if problems:
        log_event("startup_config_warning", level="warning", missing=problems)

    Base.metadata.create_all(bind=engine)
    bootstrap_superadmin()

    app.state.scheduler = None
    if settings.scheduler_enabled:
        app.state.scheduler = start_scheduler(SessionLocal)
    log_event("startup_complete", scheduler_enabled=settings.scheduler_enabled)

@app.on_event("shutdown")
def on_shutdown():
    stop_scheduler()
