"""Speaking lab route: metered pronunciation practice.

Flow: charge seconds -> transcribe -> feedback -> TTS (best-effort) -> history.
"""

from __future__ import annotations

import base64
import binascii
import logging
import math
import uuid
from typing import Any

from fastapi import APIRouter, Request

from lti_gateway.deps import (
    get_history,
    get_provider,
    get_speaking_ledger,
    read_json,
    require_user,
)
from lti_gateway.errors import MalformedRequest, QuotaExceeded, UpstreamUnavailable
from lti_gateway.history import HistoryEntry, now_ms
from lti_gateway.quota import speaking_seconds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["speaking"])

# One recording never runs longer than an hour
_MAX_DURATION_SECONDS = 3600


def _decode_audio(value: Any) -> bytes:
    if not isinstance(value, str) or not value.strip():
        raise MalformedRequest("Field 'audio' (base64) is required", code="missing_audio")
    data = value.strip()
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        audio = base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError) as e:
        raise MalformedRequest("Field 'audio' is not valid base64", code="bad_audio") from e
    if not audio:
        raise MalformedRequest("Field 'audio' is empty", code="bad_audio")
    return audio


def _duration(body: dict[str, Any]) -> float | None:
    for name in ("duration", "durationSeconds", "seconds"):
        value = body.get(name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if (isinstance(value, float) and not math.isfinite(value)) or value > _MAX_DURATION_SECONDS:
                raise MalformedRequest(
                    f"duration must be a number of seconds up to {_MAX_DURATION_SECONDS}",
                    code="bad_duration",
                )
            return float(value)
    return None


@router.post("/speaking")
async def speaking(request: Request):
    """Charge the recording's seconds, then transcribe and coach pronunciation."""
    body = await read_json(request)
    user_id = require_user(request, body)
    audio = _decode_audio(body.get("audio"))
    seconds = speaking_seconds(_duration(body), len(audio))

    ledger = get_speaking_ledger(request)
    check = await ledger.check_and_increment(user_id, seconds)
    if check.blocked:
        limit_minutes = check.limit / 60
        raise QuotaExceeded(
            f"You have reached the {limit_minutes:g}-minute monthly speaking limit.",
            used=check.new_total,
            limit=check.limit,
            usedSeconds=check.new_total,
            usedMinutes=round(check.new_total / 60, 1),
            limitSeconds=check.limit,
            limitMinutes=limit_minutes,
        )

    provider = get_provider(request)
    transcript = await provider.transcribe(audio)
    feedback = await provider.pronunciation_feedback(transcript)

    try:
        audio_base64 = await provider.synthesize(feedback.speech_text())
    except UpstreamUnavailable:
        logger.warning("TTS failed; returning feedback without audio")
        audio_base64 = None

    attempt_id = uuid.uuid4().hex
    try:
        await get_history(request).append(user_id, [
            HistoryEntry(
                kind="speaking",
                role="user",
                transcript=transcript,
                ts=now_ms(),
                extra={
                    "id": attempt_id,
                    "seconds": seconds,
                    "correct_sentence": feedback.correct_sentence,
                    "feedback_text": feedback.feedback_text,
                },
            ),
        ])
    except UpstreamUnavailable:
        logger.warning("Speaking history not saved for %s", user_id[:12])

    return {
        "id": attempt_id,
        "user": user_id,
        "transcript": transcript,
        "correct_sentence": feedback.correct_sentence,
        "feedback_text": feedback.feedback_text,
        "usedSeconds": check.new_total,
        "limitSeconds": check.limit,
        "audioBase64": audio_base64,
    }
