"""FastAPI dependencies: everything is built from ``app.state`` per request."""

from __future__ import annotations

import json
from typing import Any

from fastapi import Request

from lti_gateway.config import Settings
from lti_gateway.errors import MalformedRequest, NoIdentity
from lti_gateway.history import HistoryLog
from lti_gateway.identity import IdentityResolver
from lti_gateway.provider import TutorProvider
from lti_gateway.quota import QuotaLedger
from lti_gateway.security import check_admin
from lti_gateway.store import LedgerStore
from lti_gateway.tokens import TokenService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> LedgerStore:
    return request.app.state.store


def get_tokens(request: Request) -> TokenService:
    return request.app.state.tokens


def get_resolver(request: Request) -> IdentityResolver:
    return IdentityResolver(get_tokens(request))


def get_provider(request: Request) -> TutorProvider:
    return request.app.state.provider


def get_message_ledger(request: Request) -> QuotaLedger:
    settings = get_settings(request)
    return QuotaLedger(get_store(request), settings.quota_prefix, settings.monthly_limit)


def get_speaking_ledger(request: Request) -> QuotaLedger:
    settings = get_settings(request)
    return QuotaLedger(get_store(request), settings.speaking_prefix, settings.speaking_limit_seconds)


def get_history(request: Request) -> HistoryLog:
    settings = get_settings(request)
    return HistoryLog(get_store(request), settings.history_prefix, settings.history_max)


def require_admin(request: Request) -> None:
    check_admin(get_settings(request), request.headers.get("authorization"))


async def read_json(request: Request) -> dict[str, Any]:
    """Parse a JSON object body; an empty body is an empty object."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise MalformedRequest("Body must be valid JSON.", code="invalid_json") from e
    if not isinstance(data, dict):
        raise MalformedRequest("Body must be a JSON object.", code="invalid_json")
    return data


def require_user(request: Request, body: dict[str, Any] | None = None) -> str:
    """Resolve the caller's identity or fail with 401."""
    user_id = get_resolver(request).resolve_request(request, body)
    if not user_id:
        raise NoIdentity()
    return user_id
