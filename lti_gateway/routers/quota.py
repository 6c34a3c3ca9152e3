"""Quota routes: usage queries for the current student, admin credits."""

from __future__ import annotations

import logging
import math
from typing import Any

from fastapi import APIRouter, Depends, Request

from lti_gateway.deps import (
    get_message_ledger,
    get_speaking_ledger,
    read_json,
    require_admin,
    require_user,
)
from lti_gateway.errors import MalformedRequest
from lti_gateway.identity import USER_COOKIE
from lti_gateway.quota import QuotaLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["quota"])


@router.get("/quota")
async def quota(request: Request, ledger: QuotaLedger = Depends(get_message_ledger)):
    """Messages used this month by the calling student."""
    user_id = require_user(request)
    usage = await ledger.usage(user_id)
    return {"user": user_id, "used": usage.used, "remaining": usage.remaining, "limit": usage.limit}


@router.get("/speaking-quota")
async def speaking_quota(request: Request, ledger: QuotaLedger = Depends(get_speaking_ledger)):
    """Speaking seconds used this month by the calling student."""
    user_id = require_user(request)
    usage = await ledger.usage(user_id)
    return {
        "user": user_id,
        "usedSeconds": usage.used,
        "limitSeconds": usage.limit,
        "remainingSeconds": usage.remaining,
    }


# Store counters are signed 64-bit; keep credits well inside that
_MAX_CREDIT = 2**31


def _parse_amount(value: Any) -> int:
    if isinstance(value, bool):
        value = None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        number = math.nan
    if not math.isfinite(number) or number <= 0 or number > _MAX_CREDIT or number != int(number):
        raise MalformedRequest(f"amount must be a whole number between 1 and {_MAX_CREDIT}", code="bad_amount")
    return int(number)


@router.post("/credits/add", dependencies=[Depends(require_admin)])
async def add_credits(request: Request):
    """Give a student back ``amount`` units of this month's quota."""
    body = await read_json(request)
    user_id = body.get("user") or request.cookies.get(USER_COOKIE)
    if not isinstance(user_id, str) or not user_id.strip():
        raise MalformedRequest("user is required", code="missing_user")
    amount = _parse_amount(body.get("amount"))

    kind = body.get("quota") or "messages"
    if kind == "messages":
        ledger = get_message_ledger(request)
    elif kind == "speaking":
        ledger = get_speaking_ledger(request)
    else:
        raise MalformedRequest("quota must be 'messages' or 'speaking'", code="bad_quota")

    result = await ledger.credit(user_id.strip(), amount)
    return {
        "ok": True,
        "user": user_id.strip(),
        "was": result.was,
        "now": result.now,
        "credited": result.credited,
    }
