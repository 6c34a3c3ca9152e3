"""Monthly quota ledger on top of the key-value store.

Security contract:
- One counter per (quota type, UTC year-month, user): <prefix>:<YYYY-MM>:<user>
- The block decision uses the INCRBY return value, never a separate read
- Expiry is set to the first instant of the next UTC month, only on the
  first increment of the period (post-increment value == amount)
- Expiry-setting is best-effort: a crash between INCRBY and EXPIREAT leaves
  the counter without TTL until the next first-of-period increment
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone

from lti_gateway.store import LedgerStore, TtlState

logger = logging.getLogger(__name__)

# Conservative speaking estimate when the client sends no duration:
# assume a low bitrate (32 kbit/s) so short clips are never under-charged.
_FALLBACK_BYTES_PER_SECOND = 4000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def year_month(now: datetime) -> str:
    return f"{now.year:04d}-{now.month:02d}"


def next_month_start(now: datetime) -> datetime:
    """First instant (00:00:00 UTC) of the month after ``now``."""
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def speaking_seconds(duration: float | None = None, audio_bytes: int = 0) -> int:
    """Seconds to charge for one speaking attempt (whole seconds, minimum 1)."""
    if duration is not None and math.isfinite(duration) and duration > 0:
        return max(1, round(duration))
    return max(1, math.ceil(audio_bytes / _FALLBACK_BYTES_PER_SECOND))


@dataclass
class QuotaCheck:
    """Outcome of one metered increment."""

    new_total: int
    limit: int
    blocked: bool


@dataclass
class QuotaUsage:
    used: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


@dataclass
class CreditResult:
    was: int
    now: int
    credited: int


class QuotaLedger:
    """Per-user monthly counter for one quota type."""

    def __init__(self, store: LedgerStore, prefix: str, limit: int):
        self._store = store
        self.prefix = prefix
        self.limit = limit

    def month_key(self, user_id: str, now: datetime | None = None) -> str:
        return f"{self.prefix}:{year_month(now or utcnow())}:{user_id}"

    def users_key(self, month: str) -> str:
        """Set of users who spent quota in ``month`` (YYYY-MM)."""
        return f"{self.prefix}_users:{month}"

    async def check_and_increment(self, user_id: str, amount: int = 1) -> QuotaCheck:
        """Atomically add ``amount`` and report whether the user is now over the limit."""
        if amount < 1:
            raise ValueError("amount must be a positive integer")
        now = utcnow()
        key = self.month_key(user_id, now)

        new_total = await self._store.incrby(key, amount)
        if new_total == amount:
            # First write of the period
            expires = next_month_start(now)
            await self._store.expire_at(key, expires)
            users_key = self.users_key(year_month(now))
            await self._store.sadd(users_key, user_id)
            await self._store.expire_at(users_key, expires)

        blocked = new_total > self.limit
        if blocked:
            logger.info(
                "QUOTA_AUDIT type=%s user=%s total=%d limit=%d status=blocked",
                self.prefix, user_id[:12], new_total, self.limit,
            )
        return QuotaCheck(new_total=new_total, limit=self.limit, blocked=blocked)

    async def usage(self, user_id: str) -> QuotaUsage:
        """Current month usage (eventually consistent read)."""
        raw = await self._store.get(self.month_key(user_id))
        return QuotaUsage(used=int(raw or 0), limit=self.limit)

    async def credit(self, user_id: str, amount: int) -> CreditResult:
        """Give back ``amount`` units this month, flooring the counter at zero."""
        if amount < 1:
            raise ValueError("amount must be a positive integer")
        now = utcnow()
        key = self.month_key(user_id, now)

        after = await self._store.decrby(key, amount)
        was = after + amount
        if after < 0:
            await self._store.set(key, 0, keep_ttl=True)
        current = max(0, after)

        state = await self._store.ttl_state(key)
        if state in (TtlState.UNSET, TtlState.PERSISTENT):
            await self._store.expire_at(key, next_month_start(now))

        logger.info(
            "QUOTA_AUDIT type=%s user=%s credited=%d was=%d now=%d",
            self.prefix, user_id[:12], amount, max(0, was), current,
        )
        return CreditResult(was=max(0, was), now=current, credited=amount)

    async def month_usage(self, month: str) -> list[tuple[str, int]]:
        """(user, used) for every active user in ``month``, most used first."""
        users = sorted(await self._store.smembers(self.users_key(month)))
        keys = [f"{self.prefix}:{month}:{u}" for u in users]
        values = await self._store.mget(keys)
        rows = [(u, int(v or 0)) for u, v in zip(users, values)]
        rows.sort(key=lambda r: r[1], reverse=True)
        return rows
