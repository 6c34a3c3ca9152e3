"""Error taxonomy for the gateway.

Security contract:
- Every user-visible failure carries a machine-readable ``error`` code and
  a human-readable ``detail``; nothing else unless the error adds fields
- Replay/forgery failures never say which check failed (logged only)
- No stack traces or internal identifiers in response bodies
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class GatewayError(Exception):
    """Base class for failures that map onto an HTTP response."""

    status_code = 500
    code = "internal_error"
    default_detail = "Internal error."

    def __init__(self, detail: str | None = None, *, code: str | None = None, **extra: Any):
        self.detail = detail or self.default_detail
        if code:
            self.code = code
        self.extra = extra
        super().__init__(self.detail)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "detail": self.detail}
        body.update(self.extra)
        return body

    def headers(self) -> dict[str, str]:
        return {}


class ConfigMissing(GatewayError):
    """A required environment value is absent."""

    status_code = 500
    code = "config_missing"
    default_detail = "Server is not fully configured."


class MalformedRequest(GatewayError):
    status_code = 400
    code = "malformed_request"
    default_detail = "Request is missing required fields."


class ReplayOrForgery(GatewayError):
    """State, nonce, signature, issuer or audience check failed."""

    status_code = 400
    code = "launch_rejected"
    default_detail = "The launch could not be verified. Open the tool again from the course."


class NoIdentity(GatewayError):
    status_code = 401
    code = "no_identity"
    default_detail = "Open the tool from the course (LTI) so we can identify you."


class AdminUnauthorized(GatewayError):
    status_code = 403
    code = "forbidden"
    default_detail = "Admin credentials required."


class QuotaExceeded(GatewayError):
    status_code = 429
    code = "limit_reached"
    default_detail = "Monthly limit reached."


class RateLimited(GatewayError):
    status_code = 429
    code = "rate_limited"
    default_detail = "Too many requests."

    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.extra.get("retry_after", 60))}


class UpstreamUnavailable(GatewayError):
    """Key set, store or provider call failed or timed out."""

    status_code = 502
    code = "upstream_unavailable"
    default_detail = "A required service is unavailable. Please try again."


class TokenRejected(Exception):
    """Platform token failed signature, issuer, audience or expiry checks."""


class LaunchFailure(str, Enum):
    """Why a handshake step was rejected."""

    MISSING_HINT = "missing_hint"
    MISSING_TOKEN = "missing_token"
    STATE_MISMATCH = "state_mismatch"
    TOKEN_INVALID = "token_invalid"
    NONCE_MISMATCH = "nonce_mismatch"
    MISSING_RETURN_URL = "missing_return_url"

    def to_error(self) -> GatewayError:
        """Map a failure reason onto its public error category."""
        if self is LaunchFailure.MISSING_HINT:
            return MalformedRequest(
                "The platform must call this endpoint with login_hint and lti_message_hint. "
                "Check the tool installation (Client ID) and its placement.",
                code="missing_login_or_message_hint",
            )
        if self is LaunchFailure.MISSING_TOKEN:
            return MalformedRequest("Missing id_token.", code="missing_id_token")
        if self is LaunchFailure.MISSING_RETURN_URL:
            return MalformedRequest(
                "Deep linking request has no deep_link_return_url.",
                code="missing_deep_link_return_url",
            )
        return ReplayOrForgery()
