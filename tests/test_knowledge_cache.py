import asyncio
import gc

import pytest

from voice_relay.domain.context.knowledge_cache import KnowledgeCache, normalize_query
from voice_relay.domain.context.memory.cache_memory_store import CacheMemoryStore
from voice_relay.domain.errors import UpstreamError

from conftest import FakeVectorClient


def test_normalize_query():
    assert normalize_query("  Opening   HOURS\n") == "opening hours"
    assert normalize_query(None) == ""


@pytest.mark.asyncio
async def test_embed_hits_upstream_once_per_normalized_text():
    vector = FakeVectorClient()
    cache = KnowledgeCache(vector)

    first = await cache.embed("Opening hours")
    second = await cache.embed("  opening   HOURS ")

    assert first == second
    assert vector.embed_calls == ["opening hours"]


@pytest.mark.asyncio
async def test_concurrent_embeds_share_one_upstream_call():
    vector = FakeVectorClient(delay=0.02)
    cache = KnowledgeCache(vector)

    results = await asyncio.gather(*(cache.embed("Refund policy") for _ in range(5)))

    assert all(r == results[0] for r in results)
    assert len(vector.embed_calls) == 1


@pytest.mark.asyncio
async def test_embed_failure_raises_upstream_error_and_is_not_cached():
    vector = FakeVectorClient(embed_error=RuntimeError("rate limited"))
    cache = KnowledgeCache(vector)

    with pytest.raises(UpstreamError) as exc:
        await cache.embed("hours")
    assert exc.value.service == "embedding"

    vector.embed_error = None
    assert await cache.embed("hours") == [5.0, 1.0]
    assert len(vector.embed_calls) == 2


@pytest.mark.asyncio
async def test_embed_timeout_is_an_upstream_error():
    cache = KnowledgeCache(FakeVectorClient(delay=0.2), embedding_timeout=0.01)
    with pytest.raises(UpstreamError):
        await cache.embed("slow")


@pytest.mark.asyncio
async def test_failed_embedding_without_waiters_is_not_reported_unhandled():
    loop = asyncio.get_running_loop()
    reported = []
    previous_handler = loop.get_exception_handler()
    loop.set_exception_handler(lambda _loop, context: reported.append(context))
    try:
        cache = KnowledgeCache(FakeVectorClient(delay=0.02, embed_error=RuntimeError("down")))
        waiter = asyncio.create_task(cache.embed("hours"))
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        await asyncio.sleep(0.05)
        del waiter
        gc.collect()

        assert cache._inflight == {}
        assert reported == []
    finally:
        loop.set_exception_handler(previous_handler)


@pytest.mark.asyncio
async def test_prefetch_filters_by_agent_and_caches_chunks():
    vector = FakeVectorClient()
    cache = KnowledgeCache(vector, probe_query="general information", top_k=3)

    chunks = await cache.prefetch_knowledge("agent-1")
    again = await cache.prefetch_knowledge("agent-1")

    assert [c.text for c in chunks] == ["We open at nine."]
    assert [c.text for c in again] == ["We open at nine."]
    assert len(vector.query_calls) == 1
    _, top_k, filter = vector.query_calls[0]
    assert top_k == 3
    assert filter == {"agent_id": "agent-1"}


@pytest.mark.asyncio
async def test_prefetch_degrades_to_empty_and_retries_later():
    vector = FakeVectorClient(query_error=RuntimeError("index offline"))
    cache = KnowledgeCache(vector)

    assert await cache.prefetch_knowledge("agent-1") == []

    vector.query_error = None
    assert len(await cache.prefetch_knowledge("agent-1")) == 1
    assert len(vector.query_calls) == 2


@pytest.mark.asyncio
async def test_prefetch_embedding_failure_degrades_to_empty():
    cache = KnowledgeCache(FakeVectorClient(embed_error=RuntimeError("boom")))
    assert await cache.prefetch_knowledge("agent-1") == []


def test_top_k_is_clamped():
    assert KnowledgeCache(FakeVectorClient(), top_k=0).top_k == 1
    assert KnowledgeCache(FakeVectorClient(), top_k=10 ** 6).top_k == 5000


@pytest.mark.asyncio
async def test_cache_store_evicts_oldest_entry_when_full():
    store = CacheMemoryStore(max_entries=2)
    await store.set("a", 1)
    await store.set("b", 2)
    await store.set("c", 3)

    assert await store.get("a") is None
    assert await store.get("b") == 2
    assert await store.get("c") == 3


@pytest.mark.asyncio
async def test_cache_store_set_if_absent_keeps_first_value():
    store = CacheMemoryStore()
    assert await store.set_if_absent("k", [1.0]) == [1.0]
    assert await store.set_if_absent("k", [2.0]) == [1.0]


@pytest.mark.asyncio
async def test_cache_store_ttl_expiry():
    store = CacheMemoryStore(default_ttl=0.01)
    await store.set("k", "v")
    await asyncio.sleep(0.03)

    assert await store.get("k") is None
    stats = await store.get_stats()
    assert stats["total_keys"] == 0
