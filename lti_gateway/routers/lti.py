"""LTI routes: OIDC login initiation, launch/deep-link callback, tool JWKS.

Security contract:
- lti_state / lti_nonce cookies: HttpOnly, Secure, SameSite=None, 5 min, signed
- Every callback response (success or failure) clears both cookies
- Failure bodies name a category only; the failed check is logged
"""

from __future__ import annotations

import json
import logging
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from lti_gateway.deps import get_settings, get_tokens
from lti_gateway.errors import GatewayError
from lti_gateway.identity import USER_COOKIE
from lti_gateway.lti.handshake import (
    CallbackInput,
    DeepLinkResponse,
    begin_login,
    complete_launch,
)
from lti_gateway.result import Err
from lti_gateway.security import launch_rate_limit
from lti_gateway.tokens import sign_cookie, unsign_cookie

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/lti", tags=["lti"])

STATE_COOKIE = "lti_state"
NONCE_COOKIE = "lti_nonce"
_HANDSHAKE_MAX_AGE = 300
_USER_MAX_AGE = 30 * 24 * 3600


def _set_cookie(response: Response, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        path="/",
        secure=True,
        httponly=True,
        samesite="none",
    )


def _clear_handshake_cookies(response: Response) -> None:
    _set_cookie(response, STATE_COOKIE, "", 0)
    _set_cookie(response, NONCE_COOKIE, "", 0)


async def _read_params(request: Request) -> dict[str, str]:
    """Query string merged with a form-encoded (or JSON) POST body."""
    params = dict(request.query_params)
    if request.method != "POST":
        return params
    content_type = request.headers.get("content-type", "").lower()
    raw = await request.body()
    if "application/x-www-form-urlencoded" in content_type:
        params.update(parse_qsl(raw.decode("utf-8", errors="replace")))
    elif "application/json" in content_type and raw:
        try:
            data = json.loads(raw)
        except ValueError:
            data = None
        if isinstance(data, dict):
            params.update({k: v for k, v in data.items() if isinstance(v, str)})
    return params


def _error_response(error: GatewayError) -> JSONResponse:
    response = JSONResponse(error.to_dict(), status_code=error.status_code)
    _clear_handshake_cookies(response)
    return response


@router.api_route("/login", methods=["GET", "POST"], dependencies=[Depends(launch_rate_limit)])
async def login(request: Request):
    """Start the OIDC flow: pin state/nonce in cookies, redirect to the platform."""
    settings = get_settings(request)
    params = await _read_params(request)

    result = begin_login(settings, params)
    if isinstance(result, Err):
        error = result.reason.to_error()
        error.extra["received"] = {
            "iss": params.get("iss", ""),
            "login_hint": params.get("login_hint", ""),
            "lti_message_hint": params.get("lti_message_hint", ""),
            "method": request.method,
        }
        return JSONResponse(error.to_dict(), status_code=error.status_code)

    secret = settings.require("jwt_secret")
    redirect = result.value
    response = RedirectResponse(redirect.location, status_code=302)
    _set_cookie(response, STATE_COOKIE, sign_cookie(redirect.state, secret), _HANDSHAKE_MAX_AGE)
    _set_cookie(response, NONCE_COOKIE, sign_cookie(redirect.nonce, secret), _HANDSHAKE_MAX_AGE)
    return response


@router.post("/launch", dependencies=[Depends(launch_rate_limit)])
@router.post("/deeplink", dependencies=[Depends(launch_rate_limit)])
async def launch(request: Request):
    """Platform callback: verify, then respond to deep linking or launch the app."""
    settings = get_settings(request)
    tokens = get_tokens(request)
    params = await _read_params(request)

    try:
        secret = settings.require("jwt_secret")
        callback = CallbackInput(
            id_token=params.get("id_token"),
            state=params.get("state"),
            cookie_state=unsign_cookie(request.cookies.get(STATE_COOKIE), secret),
            cookie_nonce=unsign_cookie(request.cookies.get(NONCE_COOKIE), secret),
        )
        result = await complete_launch(settings, tokens, callback)
    except GatewayError as e:
        logger.warning("Launch aborted: %s", e.code)
        return _error_response(e)

    if isinstance(result, Err):
        return _error_response(result.reason.to_error())

    outcome = result.value
    if isinstance(outcome, DeepLinkResponse):
        response: Response = HTMLResponse(outcome.html(), status_code=200)
    else:
        response = RedirectResponse(outcome.location, status_code=302)
        _set_cookie(response, USER_COOKIE, outcome.user_id, _USER_MAX_AGE)
    _clear_handshake_cookies(response)
    return response


@router.get("/jwks")
async def jwks(request: Request):
    """The tool's public keys, for verifying deep-link responses."""
    keys = get_tokens(request).tool_jwks()
    return JSONResponse(keys, headers={"Cache-Control": "public, max-age=300, s-maxage=300"})
