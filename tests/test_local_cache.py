"""Tests for ProcessLocalCache."""

from __future__ import annotations

import time
from datetime import datetime, timezone

import pytest

from ellysia_memory.cache.local import ProcessLocalCache
from ellysia_memory.models import MemoryFragment, MemoryType


def _frag(text: str, importance: float, user_id: str = "u1") -> MemoryFragment:
    return MemoryFragment(
        user_id=user_id, text=text, type=MemoryType.FACT, importance_score=importance
    )


@pytest.fixture
def cache() -> ProcessLocalCache:
    return ProcessLocalCache(capacity_per_user=3, max_users=2)


async def test_put_keeps_importance_order_and_truncates(cache: ProcessLocalCache) -> None:
    for i, importance in enumerate([0.2, 0.9, 0.5, 0.7]):
        await cache.put("u1", _frag(f"t{i}", importance))
    assert [f.importance_score for f in await cache.get_all("u1")] == [0.9, 0.7, 0.5]


async def test_returns_copies_not_references(cache: ProcessLocalCache) -> None:
    fragment = _frag("张三", 0.5)
    await cache.put("u1", fragment)
    fragment.importance_score = 0.1
    cached = await cache.get("u1", fragment.id)
    assert cached.importance_score == 0.5
    cached.importance_score = 0.2
    assert (await cache.get_all("u1"))[0].importance_score == 0.5


async def test_miss_for_unknown_user(cache: ProcessLocalCache) -> None:
    assert await cache.get_all("nobody") == []
    assert await cache.get("nobody", "x") is None
    assert cache.get_stats()["misses"] == 2


async def test_delete_and_clear(cache: ProcessLocalCache) -> None:
    a, b = _frag("a", 0.5), _frag("b", 0.6)
    await cache.replace_all("u1", [a, b])
    assert await cache.delete("u1", a.id) is True
    assert await cache.delete("u1", a.id) is False
    assert await cache.clear("u1") == 1
    assert not cache.has_user("u1")


async def test_lru_over_users(cache: ProcessLocalCache) -> None:
    await cache.put("u1", _frag("a", 0.5, "u1"))
    await cache.put("u2", _frag("b", 0.5, "u2"))
    await cache.get_all("u1")
    await cache.put("u3", _frag("c", 0.5, "u3"))
    assert cache.has_user("u1")
    assert not cache.has_user("u2")
    assert cache.has_user("u3")


async def test_slot_expires_with_its_source(cache: ProcessLocalCache) -> None:
    await cache.replace_all("u1", [_frag("a", 0.5)], expires_at=time.time() - 1)
    assert await cache.get_all("u1") == []
    assert cache.get_stats()["expirations"] == 1


async def test_touch_marks_dirty_until_clean(cache: ProcessLocalCache) -> None:
    fragment = _frag("a", 0.5)
    await cache.replace_all("u1", [fragment])
    now = datetime.now(timezone.utc)
    assert cache.touch("u1", [fragment.id], now) == 1

    entry = (await cache.get_entries("u1"))[0]
    assert entry.dirty is True
    assert entry.fragment.access_count == 1
    assert entry.fragment.last_accessed == now

    cache.mark_clean("u1", [fragment.id])
    assert (await cache.get_entries("u1"))[0].dirty is False


async def test_len_counts_entries(cache: ProcessLocalCache) -> None:
    await cache.replace_all("u1", [_frag("a", 0.5), _frag("b", 0.4)])
    await cache.replace_all("u2", [_frag("c", 0.5, "u2")])
    assert len(cache) == 3
