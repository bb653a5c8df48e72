"""Optional API-key auth middleware and acting-user dependency.

Authentication of end users belongs to the external identity provider.
The gateway in front of this service forwards the authenticated user id in
the X-User-Id header; get_actor_id() reads it. When DREAMIE_API_KEY is
set, every /api/* request must also carry the shared secret in X-API-Key,
which keeps the service from being called around the gateway.
"""

from __future__ import annotations

import hmac
import logging
import os
import threading
import time

from fastapi import Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

_PUBLIC_PATH_PREFIXES = (
    "/health",
    "/readyz",
    "/docs",
    "/redoc",
    "/openapi.json",
)

# Rate limiting for auth failures
_AUTH_FAIL_MAX = 10  # Max failures per IP in the time window
_AUTH_FAIL_WINDOW_SECONDS = 300  # 5-minute sliding window
_auth_failures: dict[str, list[float]] = {}
_auth_lock = threading.Lock()

# X-Forwarded-For is honoured only behind a trusted reverse proxy
_TRUST_PROXY = os.environ.get("DREAMIE_TRUST_PROXY", "").strip().lower() in ("1", "true")

_MAX_USER_ID_LENGTH = 64


def _get_client_ip(request: Request) -> str:
    """Extract client IP from request.

    Only uses X-Forwarded-For when DREAMIE_TRUST_PROXY is enabled.
    """
    if _TRUST_PROXY:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _is_rate_limited(client_ip: str) -> bool:
    """Check if the client IP has exceeded the auth failure rate limit.

    Args:
        client_ip: Client IP address.

    Returns:
        True if the client should be blocked.
    """
    with _auth_lock:
        now = time.monotonic()
        timestamps = _auth_failures.get(client_ip, [])
        timestamps = [t for t in timestamps if now - t < _AUTH_FAIL_WINDOW_SECONDS]
        _auth_failures[client_ip] = timestamps
        return len(timestamps) >= _AUTH_FAIL_MAX


def _record_auth_failure(client_ip: str) -> None:
    with _auth_lock:
        _auth_failures.setdefault(client_ip, []).append(time.monotonic())


def reset_rate_limiter() -> None:
    """Reset the rate limiter state. Used by tests."""
    with _auth_lock:
        _auth_failures.clear()


def get_expected_api_key() -> str:
    """Return configured API key; empty string means auth disabled."""
    return os.environ.get("DREAMIE_API_KEY", "").strip()


def should_authenticate(path: str) -> bool:
    """Return True when this path should be protected by API-key auth."""
    if path.startswith(_PUBLIC_PATH_PREFIXES):
        return False
    return path.startswith("/api/")


async def maybe_require_api_key(request: Request, call_next) -> Response:
    """FastAPI middleware entrypoint for optional API-key auth.

    Blocks client IPs that exceed _AUTH_FAIL_MAX failures within
    _AUTH_FAIL_WINDOW_SECONDS.
    """
    if request.method.upper() == "OPTIONS":
        return await call_next(request)

    expected_key = get_expected_api_key()
    if not expected_key or not should_authenticate(request.url.path):
        return await call_next(request)

    client_ip = _get_client_ip(request)
    if _is_rate_limited(client_ip):
        logger.warning("Auth rate limit exceeded for IP %s", client_ip)
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many authentication failures. Try again later."},
        )

    provided_key = request.headers.get("X-API-Key", "")
    if not provided_key or not hmac.compare_digest(provided_key, expected_key):
        _record_auth_failure(client_ip)
        return JSONResponse(
            status_code=401,
            content={"detail": "Invalid or missing API key"},
        )
    return await call_next(request)


def get_actor_id(x_user_id: str | None = Header(default=None)) -> str:
    """Dependency returning the acting user id from X-User-Id.

    Raises:
        HTTPException: 401 when the header is missing or malformed.
    """
    actor_id = (x_user_id or "").strip()
    if not actor_id or len(actor_id) > _MAX_USER_ID_LENGTH:
        raise HTTPException(status_code=401, detail="Missing or invalid X-User-Id header")
    return actor_id
