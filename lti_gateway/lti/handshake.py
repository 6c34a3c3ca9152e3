"""OIDC handshake state machine for LTI 1.3 launches.

    LoginRequested -> RedirectedToPlatform -> CallbackReceived
        -> DeepLinkResponded | LaunchCompleted

Security contract:
- state and nonce are fresh UUIDs, single-use, held in signed 5-minute cookies
- A callback is accepted only if its state equals the state cookie AND the
  verified token's nonce equals the nonce cookie
- Signature/issuer/audience verification happens before any claim is used
- Failures are returned as Err values; the caller clears the handshake
  cookies on every outcome, success or failure
"""

from __future__ import annotations

import hmac
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from html import escape
from typing import Any, Mapping, Union
from urllib.parse import urlencode, urlsplit

from lti_gateway.config import Settings
from lti_gateway.errors import LaunchFailure, TokenRejected
from lti_gateway.identity import derive_user_id
from lti_gateway.lti import claims as lti
from lti_gateway.result import Err, Ok, Result
from lti_gateway.tokens import TokenService

logger = logging.getLogger(__name__)

_DEEP_LINK_TTL_SECONDS = 300


class HandshakeState(str, Enum):
    LOGIN_REQUESTED = "login_requested"
    REDIRECTED_TO_PLATFORM = "redirected_to_platform"
    CALLBACK_RECEIVED = "callback_received"
    DEEP_LINK_RESPONDED = "deep_link_responded"
    LAUNCH_COMPLETED = "launch_completed"


def _audit(step: HandshakeState, outcome: str, **fields: Any) -> None:
    extra = " ".join(f"{k}={v}" for k, v in fields.items())
    logger.info("LTI_AUDIT step=%s outcome=%s %s", step.value, outcome, extra)


# ── Login initiation ─────────────────────────────────────────────────────


@dataclass
class LoginRedirect:
    """Where to send the browser, plus the values to pin in cookies."""

    location: str
    state: str
    nonce: str


def begin_login(settings: Settings, params: Mapping[str, str]) -> Result[LoginRedirect]:
    """Validate login-initiation params and build the authorization redirect."""
    login_hint = (params.get("login_hint") or "").strip()
    message_hint = (params.get("lti_message_hint") or "").strip()
    iss = (params.get("iss") or "").strip()

    if not login_hint or not message_hint:
        _audit(HandshakeState.LOGIN_REQUESTED, "missing_hint", iss=iss or "-")
        return Err(LaunchFailure.MISSING_HINT)

    client_id = settings.require("lti_client_id")
    auth_url = settings.require("lti_authorization_endpoint")
    redirect_uri = settings.require("lti_redirect_uri")
    issuer = settings.require("lti_issuer")
    if iss and iss != issuer:
        logger.warning("Login initiated by unexpected issuer %s (configured %s)", iss, issuer)

    state = str(uuid.uuid4())
    nonce = str(uuid.uuid4())
    query = urlencode({
        "response_type": "id_token",
        "response_mode": "form_post",
        "scope": "openid",
        "prompt": "none",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "nonce": nonce,
        "login_hint": login_hint,
        "lti_message_hint": message_hint,
    })
    separator = "&" if "?" in auth_url else "?"
    _audit(HandshakeState.REDIRECTED_TO_PLATFORM, "ok")
    return Ok(LoginRedirect(location=f"{auth_url}{separator}{query}", state=state, nonce=nonce))


# ── Callback ─────────────────────────────────────────────────────────────


@dataclass
class CallbackInput:
    """Form fields of the platform's POST and the (unsigned) cookie values."""

    id_token: str | None
    state: str | None
    cookie_state: str | None
    cookie_nonce: str | None


@dataclass
class DeepLinkResponse:
    return_url: str
    jwt: str
    user_id: str

    def html(self) -> str:
        return auto_post_html(self.return_url, {"JWT": self.jwt})


@dataclass
class ResourceLaunch:
    user_id: str
    app_token: str
    location: str


LaunchOutcome = Union[DeepLinkResponse, ResourceLaunch]


def auto_post_html(url: str, fields: Mapping[str, str]) -> str:
    """HTML page that immediately POSTs ``fields`` to ``url`` from the browser."""
    inputs = "".join(
        f'<input type="hidden" name="{escape(name)}" value="{escape(str(value))}">'
        for name, value in fields.items()
    )
    return (
        '<!doctype html><html><head><meta charset="utf-8"></head><body>'
        f'<form id="f" method="POST" action="{escape(url)}">{inputs}</form>'
        "<script>document.getElementById('f').submit()</script>"
        "</body></html>"
    )


def _same(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _require_token(callback: CallbackInput) -> Result[str]:
    if not callback.id_token:
        return Err(LaunchFailure.MISSING_TOKEN)
    return Ok(callback.id_token)


def _check_state(callback: CallbackInput) -> Result[None]:
    if not _same(callback.state, callback.cookie_state):
        return Err(LaunchFailure.STATE_MISMATCH)
    return Ok(None)


async def _verify(tokens: TokenService, id_token: str) -> Result[dict[str, Any]]:
    try:
        return Ok(await tokens.verify_platform_token(id_token))
    except TokenRejected as e:
        logger.warning("Platform token rejected: %s", e)
        return Err(LaunchFailure.TOKEN_INVALID)


def _check_nonce(token_claims: Mapping[str, Any], cookie_nonce: str | None) -> Result[None]:
    nonce = token_claims.get("nonce")
    if not isinstance(nonce, str) or not _same(nonce, cookie_nonce):
        return Err(LaunchFailure.NONCE_MISMATCH)
    return Ok(None)


def _tool_url(settings: Settings) -> str:
    if settings.lti_tool_url:
        return settings.lti_tool_url
    parts = urlsplit(settings.require("lti_redirect_uri"))
    return f"{parts.scheme}://{parts.netloc}{settings.app_root_path}"


def _with_token(url: str, app_token: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode({'t': app_token})}"


def _deep_link(settings: Settings, tokens: TokenService, token_claims: Mapping[str, Any]) -> Result[DeepLinkResponse]:
    dl_settings = token_claims.get(lti.DL_SETTINGS) or {}
    return_url = dl_settings.get("deep_link_return_url") if isinstance(dl_settings, dict) else None
    if not return_url:
        return Err(LaunchFailure.MISSING_RETURN_URL)

    client_id = settings.require("lti_client_id")
    user_id = derive_user_id(token_claims)
    app_token = tokens.issue_app_token(user_id)

    now = int(time.time())
    payload: dict[str, Any] = {
        "iss": client_id,
        "sub": client_id,
        "aud": token_claims["iss"],
        "iat": now,
        "exp": now + _DEEP_LINK_TTL_SECONDS,
        "jti": str(uuid.uuid4()),
        "nonce": str(uuid.uuid4()),
        lti.MESSAGE_TYPE: lti.DEEP_LINKING_RESPONSE,
        lti.VERSION: lti.LTI_VERSION,
        lti.DL_CONTENT_ITEMS: [
            {
                "type": "ltiResourceLink",
                "title": settings.lti_resource_title,
                "url": _with_token(_tool_url(settings), app_token),
            }
        ],
    }
    deployment_id = token_claims.get(lti.DEPLOYMENT_ID)
    if deployment_id:
        payload[lti.DEPLOYMENT_ID] = deployment_id
    if dl_settings.get("data"):
        payload[lti.DL_DATA] = dl_settings["data"]

    signed = tokens.sign_deep_link_response(payload)
    return Ok(DeepLinkResponse(return_url=return_url, jwt=signed, user_id=user_id))


def _resource_launch(settings: Settings, tokens: TokenService, token_claims: Mapping[str, Any]) -> Result[ResourceLaunch]:
    user_id = derive_user_id(token_claims)
    app_token = tokens.issue_app_token(user_id)
    return Ok(ResourceLaunch(
        user_id=user_id,
        app_token=app_token,
        location=_with_token(settings.app_root_path, app_token),
    ))


async def complete_launch(
    settings: Settings,
    tokens: TokenService,
    callback: CallbackInput,
) -> Result[LaunchOutcome]:
    """Verify the platform callback and branch on its message type.

    Raises:
        UpstreamUnavailable: the platform key set could not be fetched
        ConfigMissing: a required setting is absent
    """
    token = _require_token(callback)
    if isinstance(token, Err):
        _audit(HandshakeState.CALLBACK_RECEIVED, token.reason.value)
        return token

    state = _check_state(callback)
    if isinstance(state, Err):
        _audit(HandshakeState.CALLBACK_RECEIVED, state.reason.value)
        return state

    verified = await _verify(tokens, token.value)
    if isinstance(verified, Err):
        _audit(HandshakeState.CALLBACK_RECEIVED, verified.reason.value)
        return verified
    token_claims = verified.value

    nonce = _check_nonce(token_claims, callback.cookie_nonce)
    if isinstance(nonce, Err):
        _audit(HandshakeState.CALLBACK_RECEIVED, nonce.reason.value)
        return nonce

    message_type = token_claims.get(lti.MESSAGE_TYPE)
    if message_type == lti.DEEP_LINKING_REQUEST:
        outcome = _deep_link(settings, tokens, token_claims)
        step = HandshakeState.DEEP_LINK_RESPONDED
    else:
        outcome = _resource_launch(settings, tokens, token_claims)
        step = HandshakeState.LAUNCH_COMPLETED

    if isinstance(outcome, Err):
        _audit(step, outcome.reason.value)
        return outcome
    _audit(step, "ok", user=outcome.value.user_id[:12], message_type=message_type or "-")
    return outcome
