"""Tests for CacheReconciler.merge."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from ellysia_memory.models import MemoryFragment, MemoryType
from ellysia_memory.reconciler import CacheReconciler

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _frag(text: str, importance: float, minutes: int = 0, type_=MemoryType.FACT) -> MemoryFragment:
    return MemoryFragment(
        user_id="u1",
        text=text,
        type=type_,
        importance_score=importance,
        created_at=T0 + timedelta(minutes=minutes),
    )


@pytest.fixture
def reconciler() -> CacheReconciler:
    return CacheReconciler()


def test_collision_keeps_higher_importance(reconciler: CacheReconciler) -> None:
    low, high = _frag("张三", 0.4), _frag("张三", 0.8)
    assert reconciler.merge([low], [high]) == [high]
    assert reconciler.merge([high], [low]) == [high]


def test_tie_prefers_more_recent(reconciler: CacheReconciler) -> None:
    old, new = _frag("张三", 0.5, minutes=0), _frag("张三", 0.5, minutes=5)
    assert reconciler.merge([old], [new]) == [new]
    assert reconciler.merge([new], [old]) == [new]


def test_dedup_key_normalizes_text(reconciler: CacheReconciler) -> None:
    a = _frag("Blue  Sky", 0.5)
    b = _frag("blue sky。", 0.6)
    assert reconciler.merge([a], [b]) == [b]


def test_same_text_different_type_kept(reconciler: CacheReconciler) -> None:
    fact = _frag("蓝色", 0.5)
    pref = _frag("蓝色", 0.5, type_=MemoryType.PREFERENCE)
    assert len(reconciler.merge([fact], [pref])) == 2


def test_sorted_and_truncated(reconciler: CacheReconciler) -> None:
    frags = [_frag(f"t{i}", i / 10) for i in range(6)]
    merged = reconciler.merge(frags[:3], frags[3:], capacity=4)
    assert [f.importance_score for f in merged] == [0.5, 0.4, 0.3, 0.2]


def test_default_capacity_from_instance() -> None:
    frags = [_frag(f"t{i}", 0.5, minutes=i) for i in range(5)]
    assert len(CacheReconciler(capacity=2).merge(frags, [])) == 2


def test_merge_is_idempotent_over_random_lists() -> None:
    rng = random.Random(7)
    texts = ["张三", "蓝色", "猫", "北京", "考试", "熬夜"]
    reconciler = CacheReconciler()

    def random_list() -> list[MemoryFragment]:
        return [
            _frag(
                rng.choice(texts),
                rng.choice([0.1, 0.5, 0.5, 0.9]),
                minutes=rng.randint(0, 3),
                type_=rng.choice(list(MemoryType)),
            )
            for _ in range(rng.randint(0, 12))
        ]

    for _ in range(200):
        a, b = random_list(), random_list()
        capacity = rng.choice([None, 1, 3, 5])
        once = reconciler.merge(a, b, capacity=capacity)
        assert reconciler.merge(once, b, capacity=capacity) == once
