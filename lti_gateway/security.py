"""Security middleware for FastAPI: CORS, rate limiting, admin bearer check.

Middleware ordering (outermost first):
1. CORS -- handles OPTIONS preflight; credentials allowed for LTI iframes
2. Rate limiting -- login/launch endpoints, per client IP (slowapi)

Each app owns its limiter (``app.state.limiter``); enabling or disabling
one app never changes another built in the same process.
"""

from __future__ import annotations

import hmac
import logging
import os
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from limits import parse
from slowapi import Limiter
from slowapi.util import get_remote_address

from lti_gateway.config import Settings
from lti_gateway.errors import AdminUnauthorized, ConfigMissing, RateLimited

logger = logging.getLogger(__name__)

# Only trust X-Forwarded-For when a proxy is declared
_TRUSTED_PROXIES = os.environ.get("TRUSTED_PROXIES", "")

LAUNCH_RATE_LIMIT = os.environ.get("LAUNCH_RATE_LIMIT", "30/minute")
_LAUNCH_LIMIT = parse(LAUNCH_RATE_LIMIT)


def _get_client_ip(request: Request) -> str:
    """Extract client IP, respecting TRUSTED_PROXIES config."""
    if _TRUSTED_PROXIES:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def build_limiter(settings: Settings) -> Limiter:
    """A fresh in-memory limiter for one app."""
    return Limiter(key_func=_get_client_ip, enabled=settings.rate_limit_enabled)


def launch_rate_limit(request: Request) -> None:
    """Dependency: per-IP limit on the login and launch endpoints.

    Raises:
        RateLimited: the caller exceeded LAUNCH_RATE_LIMIT for this path
    """
    limiter: Limiter = request.app.state.limiter
    if not limiter.enabled:
        return
    client = _get_client_ip(request)
    path = request.url.path
    if limiter.limiter.hit(_LAUNCH_LIMIT, path, client):
        return
    reset_at, _ = limiter.limiter.get_window_stats(_LAUNCH_LIMIT, path, client)
    retry_after = max(1, int(reset_at - time.time()))
    logger.warning("Rate limit exceeded: %s %s", request.method, path)
    raise RateLimited(retry_after=retry_after)


def extract_bearer_token(auth_header: str | None) -> str | None:
    """Return the credential of an ``Authorization: Bearer`` header."""
    if not auth_header:
        return None
    scheme, _, credential = auth_header.strip().partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        return None
    return credential.strip()


def check_admin(settings: Settings, auth_header: str | None) -> None:
    """Constant-time admin secret check.

    Raises:
        ConfigMissing: ADMIN_SECRET is not set (admin routes are disabled)
        AdminUnauthorized: header missing or secret mismatch
    """
    if not settings.admin_secret:
        raise ConfigMissing("ADMIN_SECRET is not configured", code="admin_secret_missing")
    token = extract_bearer_token(auth_header) or ""
    if not hmac.compare_digest(token.encode("utf-8"), settings.admin_secret.encode("utf-8")):
        logger.warning("Admin route called with invalid credentials")
        raise AdminUnauthorized()


def install_security_middleware(app: FastAPI, settings: Settings) -> None:
    """Install rate limiting and CORS on the FastAPI app.

    Middleware is added in reverse order (last added = outermost = runs first).
    """
    app.state.limiter = build_limiter(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
