"""Tests for RelevanceRetriever and read-through tier lookups."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ellysia_memory.background import BackgroundQueue
from ellysia_memory.cache.distributed import DistributedCache
from ellysia_memory.cache.local import ProcessLocalCache
from ellysia_memory.config import DistributedCacheConfig, RetrievalConfig
from ellysia_memory.exceptions import CacheUnavailable
from ellysia_memory.interfaces import TierCache
from ellysia_memory.manager import MemoryManager
from ellysia_memory.models import MemoryFragment, MemoryType
from ellysia_memory.retrieval import RelevanceRetriever
from ellysia_memory.tiers import TieredReader


def _frag(text, importance, type_=MemoryType.FACT, keywords=None, accessed=None):
    return MemoryFragment(
        user_id="u1",
        text=text,
        type=type_,
        importance_score=importance,
        related_keywords=keywords or [],
        last_accessed=accessed or datetime.now(timezone.utc),
    )


def _retriever(store, local, distributed, background, **config) -> RelevanceRetriever:
    return RelevanceRetriever(
        reader=TieredReader(local, distributed, store, background),
        store=store,
        local_cache=local,
        distributed_cache=distributed,
        background=background,
        config=RetrievalConfig(**config),
    )


# ---------------------------------------------------------------------------
# Relevance
# ---------------------------------------------------------------------------


async def test_query_returns_only_matching_preference(manager, retriever, conversations, background):
    conversations.add("c1", "u1", "我叫张三，我喜欢蓝色", meaningful=True)
    await manager.process_conversation("c1")
    await background.drain()

    results = await retriever.get_contextual("u1", "蓝色")
    assert [(f.type, f.text) for f in results] == [(MemoryType.PREFERENCE, "蓝色")]


async def test_query_without_tokens_returns_empty(retriever, store):
    await store.put("u1", _frag("蓝色", 0.9))
    assert await retriever.get_contextual("u1", "好") == []
    assert await retriever.get_contextual("u1", "   ") == []
    assert await retriever.get_contextual("u1", "蓝色", k=0) == []


async def test_unknown_user_returns_empty(retriever):
    assert await retriever.get_contextual("nobody", "蓝色") == []


def test_relevance_formula(retriever):
    now = datetime.now(timezone.utc)
    fresh = _frag("喜欢蓝色的天空", 0.6, keywords=["天空"])
    stale = _frag("喜欢蓝色的天空", 0.6, accessed=now - timedelta(days=30))

    score, overlap = retriever.relevance(fresh, ["蓝色", "天空"], now)
    assert overlap == 2
    assert score == pytest.approx(0.3 * 2 + 0.5 * 0.6 + 0.1)

    score, overlap = retriever.relevance(stale, ["蓝色"], now)
    assert score == pytest.approx(0.3 + 0.3)

    assert retriever.relevance(fresh, ["红色"], now) == (0.0, 0)


def test_relevance_capped_at_one(retriever):
    fragment = _frag("蓝色 红色 绿色 黄色", 1.0)
    score, overlap = retriever.relevance(fragment, ["蓝色", "红色", "绿色", "黄色"])
    assert overlap == 4
    assert score == 1.0


def test_rank_ties_fall_back_to_importance_then_order(retriever):
    a = _frag("蓝色a", 0.4)
    b = _frag("蓝色b", 0.4)
    c = _frag("蓝色c", 0.9)
    ranked = retriever.rank([a, b, c], ["蓝色"])
    assert [s.fragment.text for s in ranked] == ["蓝色c", "蓝色a", "蓝色b"]


async def test_zero_overlap_allowed_when_configured(store, local_cache, distributed, background):
    retriever = _retriever(store, local_cache, distributed, background, require_keyword_match=False)
    await store.put("u1", _frag("张三", 0.75))
    results = await retriever.get_contextual("u1", "蓝色")
    assert [f.text for f in results] == ["张三"]


async def test_k_limits_results(retriever, store):
    for i in range(8):
        await store.put("u1", _frag(f"蓝色{i}", 0.1 * (i + 1)))
    results = await retriever.get_contextual("u1", "蓝色", k=3)
    assert [f.text for f in results] == ["蓝色7", "蓝色6", "蓝色5"]


async def test_written_fragment_found_by_keyword(manager, retriever, conversations, background):
    for i, text in enumerate(["我叫张三", "我昨天去了上海", "我喜欢吃火锅"]):
        conversations.add(f"c{i}", "u1", text, meaningful=True)
        await manager.process_conversation(f"c{i}")
    await background.drain()

    results = await retriever.get_contextual("u1", "上海 怎么样", k=2)
    assert "去了上海" in [f.text for f in results]


# ---------------------------------------------------------------------------
# Tiers and write-back
# ---------------------------------------------------------------------------


async def test_read_through_populates_tiers(retriever, store, local_cache, distributed, background):
    fragment = _frag("蓝色", 0.6)
    await store.put("u1", fragment)

    await retriever.get_contextual("u1", "蓝色")
    await background.drain()

    assert [f.id for f in await local_cache.get_all("u1")] == [fragment.id]
    assert [f.id for f in await distributed.get_all("u1")] == [fragment.id]


async def test_access_written_back(retriever, store, background):
    fragment = _frag("蓝色", 0.6)
    await store.put("u1", fragment)

    results = await retriever.get_contextual("u1", "蓝色")
    assert results[0].access_count == 0
    await background.drain()

    stored = await store.get("u1", fragment.id)
    assert stored.access_count == 1
    assert await store.access_log_count("u1", fragment.id) == 1


async def test_write_back_failure_does_not_affect_result(retriever, store, background):
    fragment = _frag("蓝色", 0.6)
    await store.put("u1", fragment)
    await retriever.get_contextual("u1", "蓝色")  # warm the local tier
    await background.drain()
    await store.close()

    results = await retriever.get_contextual("u1", "蓝色")
    await background.drain()
    assert [f.id for f in results] == [fragment.id]
    await store.initialize()


async def test_works_without_distributed_tier(store, local_cache, background):
    retriever = _retriever(store, local_cache, DistributedCache(None), background)
    await store.put("u1", _frag("蓝色", 0.6))
    assert len(await retriever.get_contextual("u1", "蓝色")) == 1
    await background.drain()


async def test_context_results_cached(retriever, store, redis_client, background):
    await store.put("u1", _frag("蓝色", 0.6))
    first = await retriever.get_contextual("u1", "蓝色")
    await background.drain()

    keys = [k async for k in redis_client.scan_iter(match="memory:user:u1:context:*")]
    assert len(keys) == 1
    second = await retriever.get_contextual("u1", "蓝色")
    assert [f.id for f in second] == [f.id for f in first]


async def test_cold_and_warm_reads_agree_on_large_sets(
    manager, retriever, conversations, store, local_cache, background
):
    for i in range(35):
        await store.put("u1", _frag(f"事实{i}", 0.9))
    conversations.add("c1", "u1", "我喜欢蓝色", meaningful=True)
    await manager.process_conversation("c1")

    assert await retriever.get_contextual("u1", "天气") == []
    await background.drain()
    assert len(await local_cache.get_all("u1")) == local_cache.capacity

    results = await retriever.get_contextual("u1", "蓝色")
    assert [f.text for f in results] == ["蓝色"]
    await background.drain()


async def test_store_search_can_be_disabled(store, local_cache, distributed, background):
    retriever = _retriever(
        store, local_cache, distributed, background, search_store_on_shortfall=False
    )
    await local_cache.replace_all("u1", [_frag("张三", 0.9)])
    await store.put("u1", _frag("蓝色", 0.6))
    assert await retriever.get_contextual("u1", "蓝色") == []
    await background.drain()


async def test_reader_get_checks_each_tier(store, local_cache, distributed, background):
    reader = TieredReader(local_cache, distributed, store, background)
    assert all(isinstance(t, TierCache) for t in (local_cache, distributed, store))

    cached, remote, persisted = _frag("a", 0.5), _frag("b", 0.5), _frag("c", 0.5)
    await local_cache.put("u1", cached)
    await distributed.put("u1", remote)
    await store.put("u1", persisted)

    assert (await reader.get("u1", cached.id)).id == cached.id
    assert (await reader.get("u1", remote.id)).id == remote.id
    assert (await reader.get("u1", persisted.id)).id == persisted.id
    assert await reader.get("u1", "missing") is None

    offline = TieredReader(local_cache, DistributedCache(None), store, background)
    assert (await offline.get("u1", persisted.id)).id == persisted.id


# ---------------------------------------------------------------------------
# Importance updates and staleness
# ---------------------------------------------------------------------------


class RefreshFailingCache(DistributedCache):
    """Distributed tier that drops in-place updates."""

    async def refresh_fragment(self, user_id, fragment):
        raise CacheUnavailable(self.name, "refresh_fragment timed out")


def _short_ttl_setup(store, conversations, redis_client, config, cache_cls=DistributedCache):
    ttl = 1.0
    local = ProcessLocalCache()
    distributed = cache_cls(
        redis_client, DistributedCacheConfig(active_ttl_seconds=ttl, timeout_ms=1000)
    )
    background = BackgroundQueue()
    manager = MemoryManager(
        store=store,
        local_cache=local,
        distributed_cache=distributed,
        conversation_store=conversations,
        config=config,
        background=background,
    )
    retriever = _retriever(store, local, distributed, background, cache_results=False)
    return ttl, local, distributed, background, manager, retriever


async def test_importance_update_reaches_distributed_tier(store, conversations, redis_client, config):
    _, local, distributed, background, manager, retriever = _short_ttl_setup(
        store, conversations, redis_client, config
    )
    conversations.add("c1", "u1", "我叫张三，我喜欢蓝色", meaningful=True)
    await manager.process_conversation("c1")
    first = await retriever.get_contextual("u1", "蓝色")
    await background.drain()

    await manager.update_importance("u1", first[0].id, 0.2)
    await background.drain()

    assert (await distributed.get("u1", first[0].id)).importance_score == 0.2
    results = await retriever.get_contextual("u1", "蓝色")
    assert results[0].importance_score == 0.2
    await background.drain()


async def test_stale_copy_expires_while_turns_keep_arriving(
    store, conversations, redis_client, config
):
    ttl, local, distributed, background, manager, retriever = _short_ttl_setup(
        store, conversations, redis_client, config, cache_cls=RefreshFailingCache
    )
    conversations.add("c0", "u1", "我叫张三，我喜欢蓝色", meaningful=True)
    await manager.process_conversation("c0")
    first = await retriever.get_contextual("u1", "蓝色")
    await background.drain()
    original = first[0].importance_score

    await manager.update_importance("u1", first[0].id, 0.2)
    await background.drain()
    stale = await distributed.get("u1", first[0].id)
    assert stale.importance_score == original

    # Each turn merges into the distributed set; none of them may extend it.
    for i, animal in enumerate(["猫", "狗", "鱼", "鸟"], start=1):
        await asyncio.sleep(ttl * 0.4)
        conversations.add(f"c{i}", "u1", f"我喜欢{animal}", meaningful=True)
        await manager.process_conversation(f"c{i}")
        await background.drain()

    local.invalidate("u1")
    results = await retriever.get_contextual("u1", "蓝色")
    assert results[0].importance_score == 0.2
    await background.drain()
