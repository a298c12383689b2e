# app/main.py
"""
FastAPI application for the storefront campaign engine.

Exposes the campaign control API under /api/campaigns and, unless
SCHEDULER_ENABLED=false, runs the orchestrator tick in-process.
"""
import logging
import re
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import PHONE_ID, TOKEN, JWT_SECRET_KEY, LOG_LEVEL, SCHEDULER_ENABLED
from app.core.logging_config import setup_logging
from app.db.session import SessionLocal, init_db, test_db_connection
from app.api.v1.router import api_router
from app.services import build_engine
from app.services.scheduler import start_campaign_scheduler, stop_campaign_scheduler

setup_logging(app_name="storecast", level=LOG_LEVEL)
log = logging.getLogger("storecast")

# FastAPI app
app = FastAPI(
    title="Storecast - Campaign Engine",
    description="Broadcast campaigns and lifecycle reminders over WhatsApp",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# ────────────────────────────────────────────
# CORS Configuration
# ────────────────────────────────────────────
ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

LOCAL_ORIGIN_RE = re.compile(r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_origin_regex=LOCAL_ORIGIN_RE.pattern,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Tenant-Id", "Authorization", "Content-Type"],
    max_age=86400,
)

# Campaign engine - built once, handed to the API and the scheduler
engine_components = build_engine(SessionLocal)
app.state.session_factory = SessionLocal
app.state.engine = engine_components
app.state.dispatcher = engine_components.dispatcher
app.state.orchestrator = engine_components.orchestrator

# Include API routes
app.include_router(api_router, prefix="/api")


# ────────────────────────────────────────────
# Lifecycle
# ────────────────────────────────────────────

@app.on_event("startup")
async def on_startup():
    log.info("=" * 60)
    log.info("🚀 Campaign engine starting")
    log.info("=" * 60)
    try:
        init_db()
        if test_db_connection():
            log.info("✅ Database initialized")
    except Exception as e:
        log.error(f"❌ Database error: {e}")

    if not (PHONE_ID and TOKEN):
        log.warning("⚠️  WhatsApp not configured - campaign sends will be marked failed")

    await start_campaign_scheduler(app)


@app.on_event("shutdown")
async def on_shutdown():
    await stop_campaign_scheduler(app)
    log.info("👋 Campaign engine stopped")


# ────────────────────────────────────────────
# System
# ────────────────────────────────────────────

@app.get("/healthz", tags=["System"])
def health():
    """Health check endpoint"""
    db_ok = test_db_connection()

    return {
        "status": "ok" if db_ok else "degraded",
        "phone_id_ok": bool(PHONE_ID),
        "token_ok": bool(TOKEN),
        "database_ok": db_ok,
        "jwt_enabled": bool(JWT_SECRET_KEY),
        "scheduler_enabled": SCHEDULER_ENABLED,
    }


# ────────────────────────────────────────────
# Exception Handlers
# ────────────────────────────────────────────

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8100)
