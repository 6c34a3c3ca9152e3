"""Language-model provider: chat replies, transcription, pronunciation feedback, TTS.

Calls go straight to the OpenAI API with a timeout and no client-side
retries; any provider failure surfaces as UpstreamUnavailable.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from typing import Any

import openai

from lti_gateway.config import Settings
from lti_gateway.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

_FEEDBACK_SYSTEM_PROMPT = """\
You are an English teacher specialised in PRONUNCIATION.
A student said a sentence in English and we have an approximate transcript of the audio (it may contain errors).

Always answer with pure JSON in this shape:
{
  "correct_sentence": "the corrected sentence in English",
  "feedback_text": "a short explanation in Brazilian Portuguese of the main pronunciation points"
}

Do not add any text outside the JSON."""


@dataclass
class PronunciationFeedback:
    correct_sentence: str | None
    feedback_text: str

    def speech_text(self) -> str:
        """Text read back to the student by TTS."""
        parts = []
        if self.correct_sentence:
            parts.append(f"The correct sentence is: {self.correct_sentence}")
        if self.feedback_text:
            parts.append(self.feedback_text)
        return ". ".join(parts)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def parse_feedback(content: str) -> PronunciationFeedback:
    """Read the model's JSON answer, falling back to the raw text."""
    content = (content or "").strip()
    try:
        parsed = json.loads(content)
    except ValueError:
        parsed = None
    if not isinstance(parsed, dict):
        return PronunciationFeedback(
            correct_sentence=None,
            feedback_text=content or "The AI answer could not be interpreted.",
        )
    return PronunciationFeedback(
        correct_sentence=_as_text(parsed.get("correct_sentence")) or None,
        feedback_text=_as_text(parsed.get("feedback_text")),
    )


class TutorProvider:
    """Thin async wrapper around the OpenAI client."""

    def __init__(self, settings: Settings, client: openai.AsyncOpenAI | None = None):
        self._settings = settings
        self._client_instance = client

    def _client(self) -> openai.AsyncOpenAI:
        if self._client_instance is None:
            self._client_instance = openai.AsyncOpenAI(
                api_key=self._settings.require("openai_api_key"),
                timeout=self._settings.upstream_timeout_seconds,
                max_retries=0,
            )
        return self._client_instance

    async def _call(self, op: str, coro_fn, *args: Any, **kwargs: Any) -> Any:
        try:
            return await coro_fn(*args, **kwargs)
        except openai.OpenAIError as e:
            logger.warning("Provider %s failed: %s", op, type(e).__name__)
            raise UpstreamUnavailable("The AI provider is unavailable. Please try again.") from e

    async def generate_reply(self, messages: list[dict[str, str]]) -> str:
        client = self._client()
        resp = await self._call(
            "chat",
            client.chat.completions.create,
            model=self._settings.openai_model,
            messages=messages,
            temperature=0.7,
        )
        return resp.choices[0].message.content or ""

    async def transcribe(self, audio: bytes, filename: str = "audio.webm") -> str:
        client = self._client()
        resp = await self._call(
            "transcribe",
            client.audio.transcriptions.create,
            model=self._settings.transcribe_model,
            file=(filename, audio, "audio/webm"),
        )
        return getattr(resp, "text", "") or ""

    async def pronunciation_feedback(self, transcript: str) -> PronunciationFeedback:
        client = self._client()
        user_prompt = (
            f'Approximate transcript of what the student said:\n"""{transcript}"""\n\n'
            '1) Write the correct English sentence in "correct_sentence".\n'
            '2) In "feedback_text", explain simply, in Brazilian Portuguese, '
            "the main pronunciation points to improve."
        )
        resp = await self._call(
            "feedback",
            client.chat.completions.create,
            model=self._settings.openai_model,
            messages=[
                {"role": "system", "content": _FEEDBACK_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            temperature=0.4,
        )
        return parse_feedback(resp.choices[0].message.content or "")

    async def synthesize(self, text: str) -> str | None:
        """Base64 MP3 of ``text``, or None when there is nothing to say."""
        if not text:
            return None
        client = self._client()
        resp = await self._call(
            "tts",
            client.audio.speech.create,
            model=self._settings.tts_model,
            voice=self._settings.tts_voice,
            input=text,
        )
        return base64.b64encode(resp.content).decode("ascii")

    async def aclose(self) -> None:
        if self._client_instance is not None:
            await self._client_instance.close()
