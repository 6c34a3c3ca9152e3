"""Per-user bounded history of chat turns and speaking attempts.

Storage: one redis list per user (<prefix>:<user>) of JSON entries.
Appends are a single RPUSH followed by LTRIM -N -1; the tail-relative trim
never drops the newest entries of a concurrent append. Ordering for display
comes from each entry's ``ts``, not list position.

Older deployments wrote heterogeneous values into the same lists (plain
text, JSON encoded twice, "[object Object]"), so decoding is best-effort.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from lti_gateway.store import LedgerStore

logger = logging.getLogger(__name__)

# Values known to carry no recoverable content
_SENTINELS = {"", "null", "undefined", "[object Object]", "{}", "[]"}


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class HistoryEntry:
    """One normalized history record."""

    kind: str  # chat, speaking
    role: str  # user, assistant
    content: str = ""
    transcript: str = ""
    ts: int = 0  # epoch milliseconds
    extra: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        data = {"kind": self.kind, "role": self.role, "ts": self.ts}
        if self.content:
            data["content"] = self.content
        if self.transcript:
            data["transcript"] = self.transcript
        data.update(self.extra)
        return json.dumps(data, ensure_ascii=False)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        extra = data.pop("extra")
        data.update(extra)
        return data


_KNOWN_FIELDS = {"kind", "role", "content", "transcript", "ts"}


def _from_mapping(data: dict[str, Any]) -> HistoryEntry | None:
    content = data.get("content")
    transcript = data.get("transcript")
    if not isinstance(content, str):
        content = "" if content is None else json.dumps(content, ensure_ascii=False)
    if not isinstance(transcript, str):
        transcript = ""
    if not content and not transcript:
        return None
    try:
        ts = int(data.get("ts") or 0)
    except (TypeError, ValueError, OverflowError):
        ts = 0
    kind = data.get("kind") if isinstance(data.get("kind"), str) else ("speaking" if transcript else "chat")
    role = data.get("role") if isinstance(data.get("role"), str) else "user"
    extra = {k: v for k, v in data.items() if k not in _KNOWN_FIELDS}
    return HistoryEntry(kind=kind, role=role, content=content, transcript=transcript, ts=ts, extra=extra)


# ── Decoding strategies ──────────────────────────────────────────────────
# Each returns an entry, None (not applicable, try the next one) or
# raises _Unrecoverable (stop, drop the value).


class _Unrecoverable(Exception):
    pass


def _reject_sentinel(raw: str) -> HistoryEntry | None:
    if raw.strip() in _SENTINELS:
        raise _Unrecoverable(raw)
    return None


def _structured(raw: str) -> HistoryEntry | None:
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if isinstance(data, dict):
        entry = _from_mapping(data)
        if entry is None:
            raise _Unrecoverable(raw)
        return entry
    return None


def _string_wrapped(raw: str) -> HistoryEntry | None:
    try:
        inner = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(inner, str):
        return None
    entry = decode_entry(inner)
    if entry is None:
        raise _Unrecoverable(raw)
    return entry


def _raw_text(raw: str) -> HistoryEntry | None:
    text = raw.strip()
    if text.startswith(("{", "[")):
        # Truncated or broken JSON, not prose
        raise _Unrecoverable(raw)
    return HistoryEntry(kind="chat", role="user", content=text, ts=0)


_STRATEGIES: list[Callable[[str], HistoryEntry | None]] = [
    _reject_sentinel,
    _structured,
    _string_wrapped,
    _raw_text,
]


def decode_entry(raw: Any) -> HistoryEntry | None:
    """Decode one stored value, or None if it cannot be recovered."""
    if isinstance(raw, dict):
        return _from_mapping(raw)
    if not isinstance(raw, str):
        return None
    for strategy in _STRATEGIES:
        try:
            entry = strategy(raw)
        except _Unrecoverable:
            return None
        if entry is not None:
            return entry
    return None


class HistoryLog:
    """Append-only, length-bounded per-user event log."""

    def __init__(self, store: LedgerStore, prefix: str = "history", max_entries: int = 40):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._store = store
        self.prefix = prefix
        self.max_entries = max_entries

    def key(self, user_id: str) -> str:
        return f"{self.prefix}:{user_id}"

    async def append(self, user_id: str, entries: list[HistoryEntry]) -> None:
        """Push entries to the tail, then keep only the last ``max_entries``."""
        if not entries:
            return
        key = self.key(user_id)
        await self._store.rpush(key, *(e.to_json() for e in entries))
        await self._store.ltrim(key, -self.max_entries, -1)

    async def read(self, user_id: str, limit: int = 100, kind: str | None = None) -> list[HistoryEntry]:
        """Most recent ``limit`` entries, ascending by timestamp."""
        raw_values = await self._store.lrange(self.key(user_id), 0, -1)
        entries = []
        dropped = 0
        for raw in raw_values:
            entry = decode_entry(raw)
            if entry is None:
                dropped += 1
                continue
            if kind and entry.kind != kind:
                continue
            entries.append(entry)
        if dropped:
            logger.debug("Dropped %d unreadable history values for %s", dropped, user_id[:12])
        # Stable sort keeps list order for equal timestamps
        entries.sort(key=lambda e: e.ts)
        return entries[-limit:] if limit > 0 else []

    async def clear(self, user_id: str) -> None:
        await self._store.delete(self.key(user_id))
