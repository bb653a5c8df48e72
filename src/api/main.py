"""FastAPI application for the Dreamie Exchange API.

Provides the main application instance with routers, middleware,
and exception handlers configured.
"""

import logging
import os
import sys
import time as _time
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

from fastapi import FastAPI, Request

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
# Ensure our application loggers are captured
logging.getLogger("src").setLevel(logging.INFO)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.api.middleware.auth import maybe_require_api_key
from src.api.routes import conversations, feed, moderation, profiles, tickets, trades
from src.db.connection import close_db, get_db_context, init_db
from src.errors import (
    AuthorizationError,
    ConflictError,
    DomainError,
    NotFoundError,
    ValidationError,
    get_error,
    render_error,
)
from src.services.trade_service import TradeService

logger = logging.getLogger(__name__)

# Module-level state for health endpoint
_startup_time: float = 0.0

_STATUS_BY_ERROR: list[tuple[type[DomainError], int]] = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (ValidationError, 400),
    (AuthorizationError, 403),
]


def _parse_allowed_origins() -> list[str]:
    """Parse comma-separated CORS allowlist from ALLOWED_ORIGINS env var."""
    raw = os.environ.get("ALLOWED_ORIGINS", "").strip()
    if not raw:
        return []
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def _sweep_on_startup() -> bool:
    raw = os.environ.get("DREAMIE_SWEEP_ON_STARTUP", "true").strip().lower()
    return raw in {"1", "true", "yes", "on"}


def run_startup_sweep() -> int:
    """Reset trades that went stale while the service was down.

    Failures are logged and not propagated; guards still expire trades
    lazily on the next transition.
    """
    try:
        with get_db_context() as db:
            return TradeService(db).expire_stale_trades()
    except SQLAlchemyError as e:
        logger.error("Startup expiry sweep failed (non-blocking): %s", e)
        return 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Async lifespan: schema setup and expiry sweep on startup."""
    global _startup_time

    _startup_time = _time.time()
    init_db()
    if _sweep_on_startup():
        reset = run_startup_sweep()
        if reset:
            logger.info("Startup sweep reset %d stale trades", reset)

    yield

    close_db()


app = FastAPI(
    title="Dreamie Exchange API",
    description="Peer-to-peer villager trading with encrypted chat and moderation",
    version="0.1.0",
    lifespan=lifespan,
)

# Optional API auth for /api/* when DREAMIE_API_KEY is configured.
app.middleware("http")(maybe_require_api_key)

# CORS allowlist is env-driven. If unset, CORS is disabled (same-origin only).
allowed_origins = _parse_allowed_origins()
if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key", "X-User-Id"],
    )


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Handle domain errors with a consistent registry-coded body.

    Args:
        request: The incoming request.
        exc: The DomainError raised by a service.

    Returns:
        JSONResponse with error_code, message and remediation.
    """
    status_code = 500
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break
    error_def = get_error(exc.code)
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": exc.code,
            "message": str(exc),
            "remediation": error_def.remediation if error_def else None,
        },
    )


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Surface store failures as retryable 503s; nothing is retried here."""
    logger.error("Store error on %s %s: %s", request.method, request.url.path, exc)
    error_def = get_error("E-4001")
    return JSONResponse(
        status_code=503,
        content={
            "error_code": "E-4001",
            "message": render_error("E-4001", details=type(exc).__name__),
            "remediation": error_def.remediation if error_def else None,
        },
    )


# Include routers
app.include_router(trades.router, prefix="/api/v1")
app.include_router(conversations.router, prefix="/api/v1")
app.include_router(profiles.router, prefix="/api/v1")
app.include_router(tickets.router, prefix="/api/v1")
app.include_router(moderation.router, prefix="/api/v1")
app.include_router(feed.router, prefix="/api/v1")


@app.get("/health")
def health_check() -> dict:
    """Health check endpoint with version and uptime."""
    uptime = int(_time.time() - _startup_time) if _startup_time else 0
    try:
        version = _pkg_version("dreamie-exchange")
    except PackageNotFoundError:
        version = "unknown"
    return {"status": "healthy", "version": version, "uptime_seconds": uptime}


@app.get("/readyz")
def readiness_check():
    """Dependency-aware readiness check."""
    uptime = int(_time.time() - _startup_time) if _startup_time else 0
    try:
        with get_db_context() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "uptime_seconds": uptime,
                "checks": {"database": {"status": "error", "message": str(exc)}},
            },
        )
    return {
        "status": "ready",
        "uptime_seconds": uptime,
        "checks": {"database": {"status": "ok"}},
    }


@app.get("/api")
def api_root() -> dict:
    """API root with links to docs."""
    return {
        "name": "Dreamie Exchange API",
        "version": "0.1.0",
        "docs": "/docs",
        "redoc": "/redoc",
    }
