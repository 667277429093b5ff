"""Tests des stores clé-valeur (mémoire et Redis mocké)."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tenantrag.domain.errors import CacheUnavailable
from tenantrag.infra.kv.memory import InMemoryKV
from tenantrag.infra.kv.redis_kv import DEFAULT_TAG_TTL_S, RedisKV
from tests.fakes import FakeClock


@pytest.mark.asyncio
async def test_memory_kv_ttl_and_tags() -> None:
    clock = FakeClock()
    kv = InMemoryKV(clock=clock)
    await kv.set("a", "1", 10, tags=["t1", "shared"])
    await kv.set("b", "2", 100, tags=["t2", "shared"])

    assert await kv.get("a") == "1"
    assert await kv.tags() == {"t1", "t2", "shared"}

    clock.advance(11)
    assert await kv.get("a") is None
    assert len(kv) == 1

    assert await kv.invalidate_tags(["shared"]) == 1
    assert await kv.get("b") is None
    assert await kv.tags() == set()


@pytest.mark.asyncio
async def test_memory_kv_delete() -> None:
    kv = InMemoryKV()
    await kv.set("a", "1", 10, tags=["t"])
    await kv.delete("a")
    assert await kv.get("a") is None
    assert await kv.invalidate_tags(["t"]) == 0


def _redis_kv() -> tuple[RedisKV, MagicMock]:
    client = MagicMock()
    client.register_script.return_value = AsyncMock(return_value=2)
    client.incr = AsyncMock(return_value=3)
    client.get = AsyncMock(return_value="v")
    client.delete = AsyncMock(return_value=2)
    client.smembers = AsyncMock(return_value={"k1", "k2"})
    client.srem = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    return RedisKV(client, prefix="app"), client


@pytest.mark.asyncio
async def test_redis_kv_prefixes_keys() -> None:
    kv, client = _redis_kv()
    assert await kv.get("k") == "v"
    client.get.assert_awaited_once_with("app:v:k")


@pytest.mark.asyncio
async def test_redis_kv_set_uses_a_transaction() -> None:
    kv, client = _redis_kv()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    client.pipeline.return_value.__aenter__ = AsyncMock(return_value=pipe)
    client.pipeline.return_value.__aexit__ = AsyncMock(return_value=False)

    await kv.set("k", "v", 30, tags=["tenant:acme"])

    client.pipeline.assert_called_once_with(transaction=True)
    pipe.set.assert_called_once_with("app:v:k", "v", ex=30)
    pipe.sadd.assert_any_call("app:t:tenant:acme", "k")
    pipe.sadd.assert_any_call("app:tags", "tenant:acme")
    pipe.expire.assert_called_once_with("app:t:tenant:acme", DEFAULT_TAG_TTL_S)
    pipe.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_kv_invalidate_tags() -> None:
    kv, client = _redis_kv()
    removed = await kv.invalidate_tags(["tenant:acme", "ns:answers"])

    assert removed == 2
    script = client.register_script.return_value
    script.assert_awaited_once_with(
        keys=["app:tags", "app:t:tenant:acme", "app:t:ns:answers"],
        args=["app:v:", "tenant:acme", "ns:answers"],
    )
    client.smembers.assert_not_awaited()
    await kv.close()
    client.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_errors_become_cache_unavailable() -> None:
    kv, client = _redis_kv()
    client.get.side_effect = RedisConnectionError("down")
    with pytest.raises(CacheUnavailable):
        await kv.get("k")


@pytest.mark.asyncio
async def test_redis_kv_invalidating_no_tags_skips_the_script() -> None:
    kv, client = _redis_kv()
    assert await kv.invalidate_tags([]) == 0
    client.register_script.return_value.assert_not_awaited()


@pytest.mark.asyncio
async def test_redis_kv_tag_sets_outlive_long_entries() -> None:
    kv, client = _redis_kv()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    client.pipeline.return_value.__aenter__ = AsyncMock(return_value=pipe)
    client.pipeline.return_value.__aexit__ = AsyncMock(return_value=False)

    await kv.set("k", "v", DEFAULT_TAG_TTL_S * 2, tags=["tenant:acme"])

    pipe.expire.assert_called_once_with("app:t:tenant:acme", DEFAULT_TAG_TTL_S * 2)


@pytest.mark.asyncio
async def test_redis_kv_incr_and_errors() -> None:
    kv, client = _redis_kv()
    assert await kv.incr("gen") == 3
    client.incr.assert_awaited_once_with("app:v:gen")

    client.incr.side_effect = RedisConnectionError("down")
    with pytest.raises(CacheUnavailable):
        await kv.incr("gen")


@pytest.mark.asyncio
async def test_memory_kv_sweeps_expired_keys_on_set() -> None:
    clock = FakeClock()
    kv = InMemoryKV(clock=clock)
    for i in range(100):
        await kv.set(f"k{i}", "v", 10, tags=[f"tenant:t{i}", "ns:answers"])
    clock.advance(11)

    await kv.set("fresh", "v", 10, tags=["ns:answers"])

    assert set(kv._vals) == {"fresh"}
    assert await kv.tags() == {"ns:answers"}
    assert kv._tags["ns:answers"] == {"fresh"}


@pytest.mark.asyncio
async def test_memory_kv_rewrite_keeps_the_newer_expiry() -> None:
    clock = FakeClock()
    kv = InMemoryKV(clock=clock)
    await kv.set("k", "old", 5)
    await kv.set("k", "new", 50)
    clock.advance(6)

    await kv.set("other", "v", 50)

    assert await kv.get("k") == "new"


@pytest.mark.asyncio
async def test_memory_kv_counters_do_not_expire() -> None:
    clock = FakeClock()
    kv = InMemoryKV(clock=clock)
    assert await kv.incr("gen") == 1
    assert await kv.incr("gen") == 2
    clock.advance(10**6)
    await kv.set("k", "v", 1)
    assert await kv.get("gen") == "2"
