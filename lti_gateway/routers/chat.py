"""Chat route: metered tutor conversation with history."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request

from lti_gateway.deps import (
    get_history,
    get_message_ledger,
    get_provider,
    get_settings,
    read_json,
    require_user,
)
from lti_gateway.errors import MalformedRequest, QuotaExceeded, UpstreamUnavailable
from lti_gateway.history import HistoryEntry, now_ms

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])

_ROLES = {"system", "user", "assistant"}


def _clean_messages(raw: object) -> list[dict[str, str]]:
    """Validate the conversation sent by the client."""
    if not isinstance(raw, list) or not raw:
        raise MalformedRequest("messages must be a non-empty array", code="bad_messages")
    messages = []
    for item in raw:
        if not isinstance(item, dict) or item.get("role") not in _ROLES:
            raise MalformedRequest("each message needs a valid role and content", code="bad_messages")
        content = item.get("content")
        if not isinstance(content, str):
            raise MalformedRequest("each message needs a valid role and content", code="bad_messages")
        messages.append({"role": item["role"], "content": content})
    return messages


@router.post("/chat")
async def chat(request: Request):
    """Charge one message, ask the model, record the turn."""
    settings = get_settings(request)
    body = await read_json(request)
    user_id = require_user(request, body)
    messages = _clean_messages(body.get("messages"))

    ledger = get_message_ledger(request)
    check = await ledger.check_and_increment(user_id, 1)
    if check.blocked:
        raise QuotaExceeded(
            "Monthly message limit reached.",
            used=check.new_total,
            limit=check.limit,
            packages=settings.upgrade_packages(),
        )

    reply = await get_provider(request).generate_reply(messages)

    last_user = next((m["content"] for m in reversed(messages) if m["role"] == "user"), "")
    ts = now_ms()
    try:
        await get_history(request).append(user_id, [
            HistoryEntry(kind="chat", role="user", content=last_user, ts=ts),
            HistoryEntry(kind="chat", role="assistant", content=reply, ts=ts),
        ])
    except UpstreamUnavailable:
        logger.warning("Chat history not saved for %s", user_id[:12])

    return {"reply": reply, "used": check.new_total, "limit": check.limit}
