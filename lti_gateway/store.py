"""Key-value ledger client: typed wrapper over the remote atomic store.

Security contract:
- Only single-command primitives are exposed (INCR/INCRBY/DECRBY/SET/RPUSH/
  LTRIM/...); callers build their invariants on the store's atomicity
- No transactions, locks or scripts
- Any store failure or timeout surfaces as UpstreamUnavailable (no retry)
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from lti_gateway.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)


class TtlState(str, Enum):
    """Expiry state of a key, as reported by TTL."""

    UNSET = "unset"            # -2: key does not exist
    PERSISTENT = "persistent"  # -1: key exists without expiry
    SET = "set"                # >= 0: expiry scheduled

    @classmethod
    def from_ttl(cls, ttl: int) -> TtlState:
        if ttl == -2:
            return cls.UNSET
        if ttl == -1:
            return cls.PERSISTENT
        return cls.SET


class LedgerStore(Protocol):
    """Operations the quota ledger and history log rely on."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str | int, keep_ttl: bool = False) -> None: ...

    async def incr(self, key: str) -> int: ...

    async def incrby(self, key: str, amount: int) -> int: ...

    async def decrby(self, key: str, amount: int) -> int: ...

    async def expire_at(self, key: str, when: datetime) -> None: ...

    async def ttl_state(self, key: str) -> TtlState: ...

    async def delete(self, key: str) -> None: ...

    async def rpush(self, key: str, *values: str) -> int: ...

    async def ltrim(self, key: str, start: int, end: int) -> None: ...

    async def lrange(self, key: str, start: int, end: int) -> list[str]: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> set[str]: ...

    async def mget(self, keys: list[str]) -> list[str | None]: ...

    async def close(self) -> None: ...


class RedisLedgerStore:
    """Redis-backed ledger store (works with any RESP endpoint, e.g. Upstash)."""

    def __init__(self, redis_url: str, timeout: float = 5.0, client: redis.Redis | None = None):
        self._redis = client or redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )

    async def _call(self, op: str, key: str, coro):
        try:
            return await coro
        except (RedisError, OSError) as e:
            logger.warning("Store %s failed for %s: %s", op, key, type(e).__name__)
            raise UpstreamUnavailable("The usage store is unavailable. Please try again.") from e

    async def get(self, key: str) -> str | None:
        return await self._call("GET", key, self._redis.get(key))

    async def set(self, key: str, value: str | int, keep_ttl: bool = False) -> None:
        await self._call("SET", key, self._redis.set(key, value, keepttl=keep_ttl))

    async def incr(self, key: str) -> int:
        return int(await self._call("INCR", key, self._redis.incr(key)))

    async def incrby(self, key: str, amount: int) -> int:
        return int(await self._call("INCRBY", key, self._redis.incrby(key, amount)))

    async def decrby(self, key: str, amount: int) -> int:
        return int(await self._call("DECRBY", key, self._redis.decrby(key, amount)))

    async def expire_at(self, key: str, when: datetime) -> None:
        await self._call("EXPIREAT", key, self._redis.expireat(key, int(when.timestamp())))

    async def ttl_state(self, key: str) -> TtlState:
        ttl = await self._call("TTL", key, self._redis.ttl(key))
        return TtlState.from_ttl(int(ttl))

    async def delete(self, key: str) -> None:
        await self._call("DEL", key, self._redis.delete(key))

    async def rpush(self, key: str, *values: str) -> int:
        return int(await self._call("RPUSH", key, self._redis.rpush(key, *values)))

    async def ltrim(self, key: str, start: int, end: int) -> None:
        await self._call("LTRIM", key, self._redis.ltrim(key, start, end))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        return list(await self._call("LRANGE", key, self._redis.lrange(key, start, end)))

    async def sadd(self, key: str, *members: str) -> int:
        return int(await self._call("SADD", key, self._redis.sadd(key, *members)))

    async def smembers(self, key: str) -> set[str]:
        return set(await self._call("SMEMBERS", key, self._redis.smembers(key)))

    async def mget(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        return list(await self._call("MGET", keys[0], self._redis.mget(keys)))

    async def close(self) -> None:
        await self._redis.aclose()
