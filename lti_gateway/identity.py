"""Identity derivation and per-request resolution.

Resolution precedence (first success wins):
1. explicit ``uid`` parameter (service-to-service calls)
2. application token ``t`` in the body, then the query string
3. ``lti_user`` cookie set at launch
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Mapping

from fastapi import Request

from lti_gateway.tokens import TokenService

logger = logging.getLogger(__name__)

USER_COOKIE = "lti_user"


def derive_user_id(claims: Mapping[str, Any]) -> str:
    """Stable anonymous id: SHA-256 of the normalized email, else of sub."""
    email = claims.get("email")
    raw = str(email) if email else str(claims.get("sub", ""))
    normalized = raw.strip().lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _clean(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class IdentityResolver:
    """Turns the identity channels of a request into one user id."""

    def __init__(self, tokens: TokenService):
        self._tokens = tokens

    def resolve(
        self,
        uid: str | None = None,
        token: str | None = None,
        cookie: str | None = None,
    ) -> str | None:
        """Apply the precedence chain; None means no usable identity."""
        if _clean(uid):
            return _clean(uid)
        if _clean(token):
            from_token = self._tokens.verify_app_token(_clean(token))
            if from_token:
                return from_token
            logger.debug("Ignoring invalid or expired application token")
        return _clean(cookie)

    def resolve_request(self, request: Request, body: Mapping[str, Any] | None = None) -> str | None:
        """Resolve identity from a request's body, query string and cookies."""
        body = body or {}
        query = request.query_params
        uid = _clean(body.get("uid")) or _clean(query.get("uid"))
        token = _clean(body.get("t")) or _clean(query.get("t"))
        return self.resolve(uid=uid, token=token, cookie=request.cookies.get(USER_COOKIE))
