"""Tests for the redis-backed ledger store wrapper."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from lti_gateway.errors import UpstreamUnavailable
from lti_gateway.store import RedisLedgerStore, TtlState


@pytest.fixture
def redis_client():
    client = MagicMock()
    for name in (
        "get", "set", "incr", "incrby", "decrby", "expireat", "ttl", "delete",
        "rpush", "ltrim", "lrange", "sadd", "smembers", "mget", "aclose",
    ):
        setattr(client, name, AsyncMock())
    return client


@pytest.fixture
def ledger_store(redis_client):
    return RedisLedgerStore("redis://unused", client=redis_client)


class TestTtlState:
    """TTL replies map onto the three expiry states."""

    def test_missing_key(self):
        assert TtlState.from_ttl(-2) is TtlState.UNSET

    def test_no_expiry(self):
        assert TtlState.from_ttl(-1) is TtlState.PERSISTENT

    @pytest.mark.parametrize("ttl", [0, 1, 86400])
    def test_expiry_scheduled(self, ttl):
        assert TtlState.from_ttl(ttl) is TtlState.SET


class TestCommands:
    """Each wrapper issues exactly one store command."""

    @pytest.mark.asyncio
    async def test_incrby_returns_post_increment_value(self, ledger_store, redis_client):
        redis_client.incrby.return_value = 3
        assert await ledger_store.incrby("quota:2024-03:u", 2) == 3
        redis_client.incrby.assert_awaited_once_with("quota:2024-03:u", 2)

    @pytest.mark.asyncio
    async def test_decrby(self, ledger_store, redis_client):
        redis_client.decrby.return_value = -5
        assert await ledger_store.decrby("k", 10) == -5

    @pytest.mark.asyncio
    async def test_expire_at_uses_unix_seconds(self, ledger_store, redis_client):
        when = datetime(2024, 4, 1, tzinfo=timezone.utc)
        await ledger_store.expire_at("k", when)
        redis_client.expireat.assert_awaited_once_with("k", 1711929600)

    @pytest.mark.asyncio
    async def test_set_keep_ttl(self, ledger_store, redis_client):
        await ledger_store.set("k", 0, keep_ttl=True)
        redis_client.set.assert_awaited_once_with("k", 0, keepttl=True)

    @pytest.mark.asyncio
    async def test_ttl_state(self, ledger_store, redis_client):
        redis_client.ttl.return_value = -1
        assert await ledger_store.ttl_state("k") is TtlState.PERSISTENT

    @pytest.mark.asyncio
    async def test_rpush_multiple_values(self, ledger_store, redis_client):
        redis_client.rpush.return_value = 2
        assert await ledger_store.rpush("h", "a", "b") == 2
        redis_client.rpush.assert_awaited_once_with("h", "a", "b")

    @pytest.mark.asyncio
    async def test_mget_empty_skips_round_trip(self, ledger_store, redis_client):
        assert await ledger_store.mget([]) == []
        redis_client.mget.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close(self, ledger_store, redis_client):
        await ledger_store.close()
        redis_client.aclose.assert_awaited_once()


class TestFailures:
    """Store failures surface as UpstreamUnavailable, without retry."""

    @pytest.mark.asyncio
    async def test_connection_error(self, ledger_store, redis_client):
        redis_client.incrby.side_effect = RedisConnectionError("refused")
        with pytest.raises(UpstreamUnavailable):
            await ledger_store.incrby("k", 1)
        assert redis_client.incrby.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout(self, ledger_store, redis_client):
        redis_client.lrange.side_effect = RedisTimeoutError("slow")
        with pytest.raises(UpstreamUnavailable) as exc:
            await ledger_store.lrange("h", 0, -1)
        assert exc.value.status_code == 502
        assert exc.value.code == "upstream_unavailable"
