"""Tests du cache de réponses (isolation des clés, TTL, invalidation par tenant)."""

from __future__ import annotations

import random

import pytest

from tenantrag.domain.conversation import ConversationTurn
from tenantrag.domain.errors import CacheUnavailable
from tenantrag.domain.retrieval_types import Citation
from tenantrag.infra.kv.memory import InMemoryKV
from tenantrag.services.document_events import DocumentChangeBus
from tenantrag.services.response_cache import CachedAnswer, ResponseCache, tenant_tag
from tests.fakes import FakeClock, make_ctx


def _citation(tenant: str = "acme", source_type: str = "doc") -> Citation:
    return Citation(
        record_id="r1", tenant_id=tenant, source_type=source_type, source_id="s1", score=0.9
    )


class _DownKV(InMemoryKV):
    async def get(self, key):
        raise CacheUnavailable("down")

    async def set(self, key, value, ttl_seconds, tags=()):
        raise CacheUnavailable("down")

    async def tags(self):
        raise CacheUnavailable("down")


def test_key_is_case_and_whitespace_insensitive_for_the_query() -> None:
    cache = ResponseCache(InMemoryKV())
    ctx = make_ctx()
    assert cache.build_key(ctx, "What is PTO?") == cache.build_key(ctx, "  what   is pto? ")


def test_key_differs_by_tenant_permissions_page_and_history() -> None:
    cache = ResponseCache(InMemoryKV())
    base = cache.build_key(make_ctx(), "q")
    variants = [
        cache.build_key(make_ctx(tenant_id="other"), "q"),
        cache.build_key(make_ctx(access_levels={"public", "finance"}), "q"),
        cache.build_key(make_ctx(page=("ticket", "T-1")), "q"),
        cache.build_key(make_ctx(), "q", [ConversationTurn(role="user", content="hi")]),
    ]
    assert base not in variants
    assert len(set(variants)) == len(variants)
    # user id alone does not split the cache
    assert cache.build_key(make_ctx(user_id="u2"), "q") == base


def test_access_level_order_does_not_matter() -> None:
    cache = ResponseCache(InMemoryKV())
    a = make_ctx(access_levels={"finance", "hr"})
    b = make_ctx(access_levels={"hr", "finance"})
    assert cache.build_key(a, "q") == cache.build_key(b, "q")


def test_random_distinct_contexts_never_collide() -> None:
    rng = random.Random(7)
    cache = ResponseCache(InMemoryKV())
    seen: dict[str, tuple] = {}
    for _ in range(500):
        tenant = rng.choice(["a", "b", "c", "d"])
        levels = frozenset(rng.sample(["public", "finance", "hr", "exec"], rng.randint(1, 3)))
        query = rng.choice(["pto", "status of pr-0012", "budget", "who is on call"])
        identity = (tenant, levels, query)
        key = cache.build_key(make_ctx(tenant_id=tenant, access_levels=set(levels)), query)
        assert seen.setdefault(key, identity) == identity


def test_ttl_depends_on_dominant_source_type() -> None:
    cache = ResponseCache(InMemoryKV(), short_ttl=300, long_ttl=3600)
    assert cache.ttl_for([]) == 300
    assert cache.ttl_for([_citation(source_type="policy")] * 2) == 3600
    assert cache.ttl_for([_citation(source_type="ticket")]) == 300
    mixed = [_citation(source_type="policy")] * 2 + [_citation(source_type="ticket")]
    assert cache.ttl_for(mixed) == 3600
    tie = [_citation(source_type="policy"), _citation(source_type="ticket")]
    assert cache.ttl_for(tie) == 300


@pytest.mark.asyncio
async def test_set_get_and_expiry() -> None:
    clock = FakeClock()
    cache = ResponseCache(InMemoryKV(clock=clock), short_ttl=300)
    key = cache.build_key(make_ctx(), "q")

    assert await cache.set(key, CachedAnswer(tenant_id="acme", answer="a")) is True
    hit = await cache.get(key, tenant_id="acme")
    assert hit is not None and hit.answer == "a"

    clock.advance(301)
    assert await cache.get(key, tenant_id="acme") is None


@pytest.mark.asyncio
async def test_entry_of_another_tenant_is_discarded() -> None:
    kv = InMemoryKV()
    cache = ResponseCache(kv)
    await cache.set("k", CachedAnswer(tenant_id="other", answer="leak"))

    assert await cache.get("k", tenant_id="acme") is None
    assert await kv.get("k") is None


@pytest.mark.asyncio
async def test_entry_citing_another_tenant_is_discarded() -> None:
    cache = ResponseCache(InMemoryKV())
    value = CachedAnswer(tenant_id="acme", answer="a", citations=[_citation(tenant="other")])
    await cache.set("k", value)
    assert await cache.get("k", tenant_id="acme") is None


@pytest.mark.asyncio
async def test_corrupt_entry_is_a_miss() -> None:
    kv = InMemoryKV()
    await kv.set("k", "{broken", 60)
    assert await ResponseCache(kv).get("k") is None
    assert await kv.get("k") is None


@pytest.mark.asyncio
async def test_tenant_invalidation_is_immediate_and_scoped() -> None:
    kv = InMemoryKV()
    cache = ResponseCache(kv)
    key_a = cache.build_key(make_ctx(tenant_id="a"), "q")
    key_b = cache.build_key(make_ctx(tenant_id="b"), "q")
    await cache.set(key_a, CachedAnswer(tenant_id="a", answer="A"))
    await cache.set(key_b, CachedAnswer(tenant_id="b", answer="B"))

    bus = DocumentChangeBus()
    bus.subscribe(cache.invalidate_tenant)
    assert await bus.notify("a") == 1

    assert await cache.get(key_a, tenant_id="a") is None
    assert (await cache.get(key_b, tenant_id="b")).answer == "B"
    assert tenant_tag("a") not in await kv.tags()


@pytest.mark.asyncio
async def test_invalidate_with_predicate() -> None:
    cache = ResponseCache(InMemoryKV(), namespace="answers")
    await cache.set("k1", CachedAnswer(tenant_id="a", answer="1"))
    await cache.set("k2", CachedAnswer(tenant_id="b", answer="2"), tags=["custom"])

    assert await cache.invalidate(lambda tag: tag == "custom") == 1
    assert await cache.invalidate(lambda tag: tag.startswith("ns:")) == 1


@pytest.mark.asyncio
async def test_store_outage_is_swallowed() -> None:
    cache = ResponseCache(_DownKV())
    assert await cache.get("k", tenant_id="acme") is None
    assert await cache.set("k", CachedAnswer(tenant_id="acme", answer="a")) is False
    assert await cache.invalidate_tenant("acme") == 0


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others() -> None:
    calls: list[str] = []

    async def broken(tenant_id: str) -> None:
        raise RuntimeError("boom")

    async def recorder(tenant_id: str) -> None:
        calls.append(tenant_id)

    bus = DocumentChangeBus()
    bus.subscribe(broken)
    bus.subscribe(recorder)

    assert await bus.notify("acme") == 1
    assert calls == ["acme"]


@pytest.mark.asyncio
async def test_invalidation_bumps_the_tenant_generation() -> None:
    cache = ResponseCache(InMemoryKV())
    ctx = make_ctx()

    assert await cache.generation("acme") == 0
    await cache.invalidate_tenant("acme")

    assert await cache.generation("acme") == 1
    assert await cache.generation("other") == 0
    assert cache.build_key(ctx, "q", generation=0) != cache.build_key(ctx, "q", generation=1)


@pytest.mark.asyncio
async def test_write_from_an_older_generation_is_skipped() -> None:
    kv = InMemoryKV()
    cache = ResponseCache(kv)
    generation = await cache.generation("acme")
    key = cache.build_key(make_ctx(), "q", generation=generation)

    await cache.invalidate_tenant("acme")
    stored = await cache.set(
        key, CachedAnswer(tenant_id="acme", answer="stale"), generation=generation
    )

    assert stored is False
    assert await cache.get(key, tenant_id="acme") is None
    assert tenant_tag("acme") not in await kv.tags()


@pytest.mark.asyncio
async def test_write_with_current_generation_is_stored() -> None:
    cache = ResponseCache(InMemoryKV())
    await cache.invalidate_tenant("acme")
    generation = await cache.generation("acme")
    key = cache.build_key(make_ctx(), "q", generation=generation)

    assert await cache.set(key, CachedAnswer(tenant_id="acme", answer="a"), generation=generation)
    assert (await cache.get(key, tenant_id="acme")).answer == "a"


@pytest.mark.asyncio
async def test_generation_outage_skips_conditional_writes() -> None:
    cache = ResponseCache(_DownKV())
    assert await cache.generation("acme") is None
    assert await cache.set("k", CachedAnswer(tenant_id="acme", answer="a"), generation=0) is False
