"""
Password login for the signed session cookie.

A successful ``POST /api/login`` sets ``session["authenticated"]``; the
WebSocket upgrade gate only checks that flag. Login attempts are rate limited
per client address with slowapi.
"""

import logging
import secrets

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


def login_rate(max_attempts: int, window_seconds: float) -> str:
    """slowapi limit string, e.g. ``10 per 900 seconds``."""
    return f"{int(max_attempts)} per {max(1, int(window_seconds))} seconds"


def password_matches(supplied: str, expected: str) -> bool:
    return secrets.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


async def rate_limit_exceeded(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    client = request.client.host if request.client else "unknown"
    logger.warning("login: rate limit hit for %s (%s)", client, exc.detail)
    return JSONResponse(
        {"success": False, "message": "Too many login attempts. Please try again later."},
        status_code=429,
    )


async def login(request: Request):
    gateway = request.app.state.gateway
    client = request.client.host if request.client else "unknown"
    expected = gateway.config.app_password
    if not expected:
        return JSONResponse(
            {"success": False, "message": "Application password is not configured on the server."},
            status_code=500,
        )
    try:
        body = await request.json()
    except Exception:
        body = {}
    password = body.get("password") if isinstance(body, dict) else None
    if isinstance(password, str) and password and password_matches(password, expected):
        request.session["authenticated"] = True
        logger.info("login: %s authenticated", client)
        return {"success": True}

    logger.info("login: invalid password from %s", client)
    return JSONResponse({"success": False, "message": "Invalid password"}, status_code=401)


async def logout(request: Request):
    request.session.clear()
    return {"success": True}


async def auth_status(request: Request):
    return {"isAuthenticated": request.session.get("authenticated") is True}


def create_router(limiter: Limiter, rate: str) -> APIRouter:
    """Auth routes with the login endpoint limited by ``limiter``.

    Built per app so every app keeps its own attempt counters.
    """
    router = APIRouter()
    router.add_api_route("/api/login", limiter.limit(rate)(login), methods=["POST"])
    router.add_api_route("/api/logout", logout, methods=["POST"])
    router.add_api_route("/api/auth/status", auth_status, methods=["GET"])
    return router
