"""Application factory.

The store, platform key set and provider are constructed here (or injected
by the caller) and kept on ``app.state``; nothing is a module singleton.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from lti_gateway.config import Settings
from lti_gateway.errors import GatewayError, MalformedRequest
from lti_gateway.provider import TutorProvider
from lti_gateway.routers import admin, chat, history, lti, quota, speaking
from lti_gateway.security import install_security_middleware
from lti_gateway.store import LedgerStore, RedisLedgerStore
from lti_gateway.tokens import RemoteKeySet, TokenService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close upstream clients on shutdown."""
    try:
        yield
    finally:
        await app.state.store.close()
        await app.state.key_set.aclose()
        await app.state.provider.aclose()
        logger.info("Upstream clients closed")


async def _gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.code)
    else:
        logger.info("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.code)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=exc.headers())


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = ", ".join(str(err.get("loc", ["?"])[-1]) for err in exc.errors())
    error = MalformedRequest(f"Invalid parameters: {fields}", code="invalid_parameters")
    return JSONResponse(error.to_dict(), status_code=error.status_code)


def create_app(
    settings: Settings | None = None,
    store: LedgerStore | None = None,
    key_set: RemoteKeySet | None = None,
    provider: TutorProvider | None = None,
) -> FastAPI:
    """Build the gateway app; collaborators default to their real implementations."""
    settings = settings or Settings()
    store = store or RedisLedgerStore(settings.redis_url, timeout=settings.redis_timeout_seconds)
    key_set = key_set or RemoteKeySet(
        settings.lti_jwks_endpoint,
        cache_seconds=settings.jwks_cache_seconds,
        timeout=settings.upstream_timeout_seconds,
    )
    provider = provider or TutorProvider(settings)

    app = FastAPI(title="LTI Gateway", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.key_set = key_set
    app.state.tokens = TokenService(settings, key_set)
    app.state.provider = provider

    for module in (lti, quota, chat, speaking, history, admin):
        app.include_router(module.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    app.add_exception_handler(GatewayError, _gateway_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    install_security_middleware(app, settings)
    return app
