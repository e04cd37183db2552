"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

- Structured JSON logging
- Request id / process time headers
- Domain errors rendered as {"detail", "code"}
- Prometheus metrics
"""

import time
import uuid
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from config.database import close_db, init_db, ping_db
from config.redis_client import close_redis
from config.settings import settings
from services.realtime.change_feed import open_change_feed, set_change_feed
from shared.schemas.schemas import ErrorResponse
from shared.utils.exceptions import AppError, StoreUnavailable

# Service routers
from services.booking.router import router as booking_router
from services.allocation.router import router as allocation_router
from services.messaging.router import router as messaging_router
from services.notification.router import router as notification_router
from services.kyc.router import router as kyc_router


# ── Logging ──────────────────────────────────────────────────

import logging
import json
from logging import LogRecord

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)

# Configure structured logging for every module logger
handler = logging.StreamHandler()
handler.setFormatter(JSONFormatter())
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    handlers=[handler],
)
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME}...")

    await init_db()
    logger.info("Database connected")

    set_change_feed(await open_change_feed())
    logger.info(f"Change feed ready ({settings.CHANGE_FEED_BACKEND})")

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    set_change_feed(None)
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def _error(status_code: int, detail: str, code: str, request_id=None, headers=None) -> JSONResponse:
    content = ErrorResponse(detail=detail, code=code).model_dump()
    if request_id:
        content["request_id"] = request_id
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Pilgrimage Services Booking API

Booking lifecycle and allocation engine for proxy Hajj / Umrah / Ziyarat:
- **Bookings**: intake, status state machine, proof gallery, activity timeline
- **Allocations**: manual assignment, auto-routing, unassignment
- **Messages**: traveler ↔ provider conversation per booking
- **Notifications**: role-scoped real-time feed over WebSocket
- **KYC**: provider / vendor verification and suspension

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>` header.

### Roles
- `traveler`: book services, follow progress, message the provider
- `provider`: perform assigned bookings, upload proofs
- `vendor`: allocate bookings within their provider pool
- `admin` / `super_admin`: full allocation and dispute control
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (order matters — outermost first) ───────────────
    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )

    # GZip compression
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        request_id = getattr(request.state, "request_id", None)
        if exc.status_code >= 500:
            logger.error(f"[{request_id}] {exc.code}: {exc.detail}")
        return _error(exc.status_code, exc.detail, exc.code, request_id, exc.headers)

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request: Request, exc: SQLAlchemyError):
        """Store failures outside a unit of work (plain reads)."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Store failure: {exc}")
        error = StoreUnavailable()
        return _error(error.status_code, error.detail, error.code, request_id)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Exception: {str(exc)}", exc_info=True)

        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        return _error(500, detail, "internal_error", request_id)

    # ── Routes ────────────────────────────────────────────────────

    # Health check (public)
    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from config.redis_client import redis_client

        checks = {"status": "ok", "version": settings.APP_VERSION}

        # DB check
        try:
            await ping_db()
            checks["database"] = "ok"
        except (SQLAlchemyError, OSError):
            checks["database"] = "error"
            checks["status"] = "degraded"

        # Redis check
        if settings.CHANGE_FEED_BACKEND == "redis":
            try:
                if redis_client is None:
                    raise RedisError("Redis not initialized")
                await redis_client.ping()
                checks["redis"] = "ok"
            except (RedisError, OSError) as e:
                logger.warning(f"Redis health check failed: {e}")
                checks["redis"] = "error"
                checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Register all service routers
    app.include_router(booking_router)
    app.include_router(messaging_router)
    app.include_router(allocation_router)
    app.include_router(notification_router)
    app.include_router(kyc_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
