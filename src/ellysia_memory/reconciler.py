"""Fragment list reconciliation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .models import MemoryFragment


@dataclass
class CacheReconciler:
    """Merges fragment lists with deduplication and truncation.

    Fragments collide when they share ``(type, normalized-text hash)``.
    The survivor is the one with the higher importance; ties go to the
    more recently created fragment, then to the smaller id.
    Output is ordered by ``MemoryFragment.rank_key``, a total order, so
    truncation is stable and ``merge(merge(a, b), b) == merge(a, b)``.
    """

    capacity: int | None = None

    def merge(
        self,
        existing: Iterable[MemoryFragment],
        incoming: Iterable[MemoryFragment],
        capacity: int | None = None,
    ) -> list[MemoryFragment]:
        survivors: dict[tuple[str, str], MemoryFragment] = {}
        for fragment in (*existing, *incoming):
            key = fragment.dedup_key
            current = survivors.get(key)
            if current is None or self._prefer(fragment, current):
                survivors[key] = fragment

        merged = sorted(survivors.values(), key=lambda f: f.rank_key)
        limit = capacity if capacity is not None else self.capacity
        if limit is not None:
            merged = merged[:limit]
        return merged

    @staticmethod
    def _prefer(candidate: MemoryFragment, current: MemoryFragment) -> bool:
        # Same order as the output sort, so a dropped loser can never outrank
        # the survivor on a later merge.
        return candidate.rank_key < current.rank_key
