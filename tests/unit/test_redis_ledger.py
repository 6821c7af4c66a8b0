"""RedisIdempotencyLedger against a mocked client."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from report_aggregator.core.errors import InadmissibleEventError, LedgerUnavailable
from report_aggregator.storage.interfaces import IIdempotencyLedger
from report_aggregator.storage.redis_ledger import RedisIdempotencyLedger


@pytest.fixture
def client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def redis_ledger(client) -> RedisIdempotencyLedger:
    return RedisIdempotencyLedger(client=client, prefix="t:", retention_seconds=60)


def test_satisfies_protocol(redis_ledger):
    assert isinstance(redis_ledger, IIdempotencyLedger)


async def test_mark_uses_set_nx_ex(redis_ledger, client):
    client.set.return_value = True
    result = await redis_ledger.mark_processed("e1")

    assert result.applied is True
    args, kwargs = client.set.call_args
    assert args[0] == "t:e1"
    assert kwargs == {"nx": True, "ex": 60}


async def test_duplicate_mark_not_applied(redis_ledger, client):
    client.set.return_value = None
    assert (await redis_ledger.mark_processed("e1")).applied is False


async def test_is_processed(redis_ledger, client):
    client.exists.return_value = 1
    assert await redis_ledger.is_processed("e1")
    client.exists.assert_awaited_once_with("t:e1")


async def test_empty_id_rejected(redis_ledger, client):
    with pytest.raises(InadmissibleEventError):
        await redis_ledger.mark_processed(" ")
    client.set.assert_not_awaited()


async def test_connection_error_becomes_unavailable(redis_ledger, client):
    client.exists.side_effect = RedisConnectionError("refused")
    with pytest.raises(LedgerUnavailable):
        await redis_ledger.is_processed("e1")


async def test_health_check_false_on_error(redis_ledger, client):
    client.ping.side_effect = RedisConnectionError("refused")
    assert await redis_ledger.health_check() is False


def test_unconnected_access_raises():
    with pytest.raises(RuntimeError):
        RedisIdempotencyLedger().redis


async def test_close_releases_client(redis_ledger, client):
    await redis_ledger.close()
    client.aclose.assert_awaited_once()
    with pytest.raises(RuntimeError):
        redis_ledger.redis
