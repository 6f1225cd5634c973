"""
Unit tests for the response cache
"""

import pytest

from lessonchat.services.response_cache import CachedResponse, ResponseCache, normalize_query
from tests.utils.mock_services import FakeClock, InMemoryKeyValueStore


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def cache(store):
    return ResponseCache(store=store, prefix="test:", ttl=3600)


def sample_response(content="Cached answer"):
    return CachedResponse(
        content=content,
        video_references=[{"video_id": "vid-1", "timestamp": 30, "title": "Intro", "chunk_id": "chunk-1"}],
        model="deepseek-chat",
        input_tokens=100,
        output_tokens=20,
        cost_usd=0.00005,
    )


class TestCacheKey:

    def test_normalization(self):
        assert normalize_query("  What IS   a stop\tloss? ") == "what is a stop loss?"

    def test_key_ignores_case_whitespace_and_chunk_order(self, cache):
        a = cache.make_key("What is a stop loss?", ["chunk-2", "chunk-1"])
        b = cache.make_key("  what is a  STOP loss? ", ["chunk-1", "chunk-2"])
        assert a == b
        assert a.startswith("test:response:")

    def test_key_depends_on_chunk_set(self, cache):
        assert cache.make_key("q", ["chunk-1"]) != cache.make_key("q", ["chunk-1", "chunk-2"])


class TestCacheReadWrite:

    @pytest.mark.asyncio
    async def test_put_then_get(self, cache):
        key = cache.make_key("q", ["chunk-1"])
        assert await cache.put(key, sample_response(), video_ids=["vid-1"]) is True

        hit = await cache.get(key)

        assert hit.content == "Cached answer"
        assert hit.video_references[0]["chunk_id"] == "chunk-1"

    @pytest.mark.asyncio
    async def test_entries_expire(self, cache, clock):
        key = cache.make_key("q", ["chunk-1"])
        await cache.put(key, sample_response(), ttl=10)
        clock.advance(11)

        assert await cache.get(key) is None

    @pytest.mark.asyncio
    async def test_store_failure_is_a_miss(self, cache, store):
        key = cache.make_key("q", ["chunk-1"])
        await cache.put(key, sample_response())
        store.fail = True

        assert await cache.get(key) is None
        assert await cache.put(key, sample_response()) is False

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_a_miss(self, cache, store):
        key = cache.make_key("q", ["chunk-1"])
        await store.set(key, "{not json")

        assert await cache.get(key) is None

    @pytest.mark.asyncio
    async def test_invalidate_by_video(self, cache):
        key_1 = cache.make_key("q1", ["chunk-1"])
        key_2 = cache.make_key("q2", ["chunk-1", "chunk-9"])
        other = cache.make_key("q3", ["chunk-9"])
        await cache.put(key_1, sample_response(), video_ids=["vid-1"])
        await cache.put(key_2, sample_response(), video_ids=["vid-1", "vid-9"])
        await cache.put(other, sample_response(), video_ids=["vid-9"])

        removed = await cache.invalidate_by_video("vid-1")

        assert removed == 2
        assert await cache.get(key_1) is None
        assert await cache.get(key_2) is None
        assert await cache.get(other) is not None
        assert await cache.invalidate_by_video("vid-1") == 0

    @pytest.mark.asyncio
    async def test_stats(self, cache):
        key = cache.make_key("q", ["chunk-1"])
        await cache.get(key)
        await cache.put(key, sample_response())
        await cache.get(key)
        await cache.get(key)

        stats = await cache.stats()

        assert stats == {"available": True, "hits": 2, "misses": 1, "hit_rate": 0.6667, "entries": 1}

    @pytest.mark.asyncio
    async def test_stats_when_store_is_down(self, cache, store):
        store.fail = True
        stats = await cache.stats()
        assert stats["available"] is False
