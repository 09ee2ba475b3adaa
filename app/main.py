# app/main.py
"""
FastAPI application entry point.
Includes security middleware, global error handlers, and all routers.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from app.routers import access, credentials, devices, events, health, poller, webhook
from app.database import create_tables
from app.config import settings
from app.services.attendance_service import attendance_recorder
from app.services.event_pipeline import event_pipeline
from app.services.event_poller import poller_supervisor
from app.utils.logger import get_logger
import time

logger = get_logger(__name__)

app = FastAPI(
    title="Gym Access Control Integration API",
    description="Hikvision / ESSL door-controller integration: credentials, devices, member access and events.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS (allow the gym dashboard to call the API) ───────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],   # Restrict to dashboard origin in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── API Key Middleware ───────────────────────────────────────────────────────
class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Optional lightweight API key auth.
    Provider webhooks are excluded: the provider does not send our key.
    Set API_KEY in .env. Leave empty to disable auth.
    """
    open_paths = {"/api/v1/health", "/docs", "/redoc", "/openapi.json"}
    open_prefixes = ("/api/v1/webhooks/",)

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.open_paths or path.startswith(self.open_prefixes) or not settings.API_KEY:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
        if api_key != settings.API_KEY:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or missing API key"},
            )
        return await call_next(request)


if settings.API_KEY:
    app.add_middleware(APIKeyMiddleware)


# ── Request Timing Middleware ────────────────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 2)
    logger.debug(f"{request.method} {request.url.path} → {response.status_code} ({duration}ms)")
    return response


# ── Global Exception Handler ─────────────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ── Routers ──────────────────────────────────────────────────────────────────
app.include_router(credentials.router, prefix="/api/v1", tags=["🔑 Credentials"])
app.include_router(devices.router,     prefix="/api/v1", tags=["🚪 Devices"])
app.include_router(access.router,      prefix="/api/v1", tags=["🧍 Member Access"])
app.include_router(events.router,      prefix="/api/v1", tags=["📡 Access Events"])
app.include_router(webhook.router,     prefix="/api/v1", tags=["📥 Webhooks"])
app.include_router(poller.router,      prefix="/api/v1", tags=["🔁 Polling"])
app.include_router(health.router,      prefix="/api/v1", tags=["💚 Health"])


# ── Startup ───────────────────────────────────────────────────────────────────
_unsubscribers = []


@app.on_event("startup")
async def startup():
    logger.info("🚀 Access integration backend starting up...")
    create_tables()
    logger.info("✅ Database tables ready")

    _unsubscribers.append(event_pipeline.on_event(attendance_recorder))

    if settings.POLLING_ENABLED:
        branches = poller_supervisor.start_all_active()
        logger.info(f"📡 Event polling started for branches: {branches}")
    else:
        logger.info("📡 Event polling disabled (webhook only)")

    logger.info(f"🌐 Listening on http://{settings.BACKEND_IP}:{settings.BACKEND_PORT}")
    logger.info("📖 API docs at /docs")


@app.on_event("shutdown")
async def shutdown():
    logger.info("🛑 Access integration backend shutting down...")
    await poller_supervisor.stop_all()
    while _unsubscribers:
        _unsubscribers.pop()()
