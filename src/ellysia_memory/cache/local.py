"""
Process-local fragment cache.

Per-user ordered lists (importance descending) capped at a small size, with
an LRU bound over users. Entries have no TTL of their own; a user's slot
may carry the expiry of the tier it was copied from so that it never
outlives its source.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Iterable

from loguru import logger

from ..models import CacheEntry, MemoryFragment


@dataclass
class _UserSlot:
    entries: list[CacheEntry] = field(default_factory=list)
    expires_at: float | None = None

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class ProcessLocalCache:
    """
    In-process tier.

    Features:
    - capacity per user: overflow truncates the least important tail
    - LRU over users once ``max_users`` is reached
    - thread-safe: every mutation runs under a Lock
    - stats: hits, misses, evictions, expirations
    """

    name = "local"

    def __init__(self, capacity_per_user: int = 30, max_users: int = 1000):
        self._capacity = capacity_per_user
        self._max_users = max_users
        self._slots: OrderedDict[str, _UserSlot] = OrderedDict()
        self._lock = Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0,
        }

    @property
    def capacity(self) -> int:
        return self._capacity

    # ------------------------------------------------------------------
    # Internals (call with the lock held)
    # ------------------------------------------------------------------

    def _live_slot(self, user_id: str) -> _UserSlot | None:
        slot = self._slots.get(user_id)
        if slot is None:
            return None
        if slot.expired(time.time()):
            del self._slots[user_id]
            self._stats["expirations"] += 1
            return None
        self._slots.move_to_end(user_id)
        return slot

    def _evict_lru(self) -> None:
        while len(self._slots) >= self._max_users:
            user_id, _ = self._slots.popitem(last=False)
            self._stats["evictions"] += 1
            logger.debug(f"Local cache evicted user slot {user_id}")

    def _store_slot(self, user_id: str, slot: _UserSlot) -> None:
        if user_id not in self._slots:
            self._evict_lru()
        self._slots[user_id] = slot
        self._slots.move_to_end(user_id)

    def _sort_and_truncate(self, slot: _UserSlot) -> None:
        slot.entries.sort(key=lambda e: e.fragment.rank_key)
        if len(slot.entries) > self._capacity:
            self._stats["evictions"] += len(slot.entries) - self._capacity
            del slot.entries[self._capacity :]

    # ------------------------------------------------------------------
    # Tier contract
    # ------------------------------------------------------------------

    async def get(self, user_id: str, key: str) -> MemoryFragment | None:
        with self._lock:
            slot = self._live_slot(user_id)
            if slot is not None:
                for entry in slot.entries:
                    if entry.fragment.id == key:
                        self._stats["hits"] += 1
                        return entry.fragment.model_copy(deep=True)
            self._stats["misses"] += 1
            return None

    async def get_all(self, user_id: str) -> list[MemoryFragment]:
        return [entry.fragment for entry in await self.get_entries(user_id)]

    async def get_entries(self, user_id: str) -> list[CacheEntry]:
        with self._lock:
            slot = self._live_slot(user_id)
            if slot is None or not slot.entries:
                self._stats["misses"] += 1
                return []
            self._stats["hits"] += 1
            return [
                CacheEntry(
                    fragment=e.fragment.model_copy(deep=True),
                    expires_at=slot.expires_at,
                    dirty=e.dirty,
                )
                for e in slot.entries
            ]

    async def put(
        self, user_id: str, fragment: MemoryFragment, ttl: float | None = None
    ) -> None:
        """Insert or replace one fragment; ``ttl`` only applies to a new slot."""
        with self._lock:
            slot = self._live_slot(user_id)
            if slot is None:
                slot = _UserSlot(expires_at=time.time() + ttl if ttl else None)
                self._store_slot(user_id, slot)
            slot.entries = [e for e in slot.entries if e.fragment.id != fragment.id]
            slot.entries.append(
                CacheEntry(fragment=fragment.model_copy(deep=True), expires_at=slot.expires_at)
            )
            self._sort_and_truncate(slot)

    async def delete(self, user_id: str, key: str) -> bool:
        with self._lock:
            slot = self._slots.get(user_id)
            if slot is None:
                return False
            before = len(slot.entries)
            slot.entries = [e for e in slot.entries if e.fragment.id != key]
            return len(slot.entries) < before

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def has_user(self, user_id: str) -> bool:
        with self._lock:
            return self._live_slot(user_id) is not None

    async def replace_all(
        self,
        user_id: str,
        fragments: Iterable[MemoryFragment],
        expires_at: float | None = None,
    ) -> None:
        """Replace a user's slot with copies of ``fragments``."""
        slot = _UserSlot(
            entries=[
                CacheEntry(fragment=f.model_copy(deep=True), expires_at=expires_at)
                for f in fragments
            ],
            expires_at=expires_at,
        )
        with self._lock:
            self._sort_and_truncate(slot)
            self._store_slot(user_id, slot)

    def touch(self, user_id: str, fragment_ids: Iterable[str], accessed_at: datetime) -> int:
        """Record an access on cached copies; they stay dirty until ``mark_clean``."""
        wanted = set(fragment_ids)
        touched = 0
        with self._lock:
            slot = self._slots.get(user_id)
            if slot is None:
                return 0
            for entry in slot.entries:
                if entry.fragment.id in wanted:
                    entry.fragment.access_count += 1
                    entry.fragment.last_accessed = accessed_at
                    entry.dirty = True
                    touched += 1
        return touched

    def mark_clean(self, user_id: str, fragment_ids: Iterable[str]) -> None:
        wanted = set(fragment_ids)
        with self._lock:
            slot = self._slots.get(user_id)
            if slot is None:
                return
            for entry in slot.entries:
                if entry.fragment.id in wanted:
                    entry.dirty = False

    def invalidate(self, user_id: str) -> bool:
        """Drop a user's slot so the next read falls through."""
        with self._lock:
            return self._slots.pop(user_id, None) is not None

    async def clear(self, user_id: str) -> int:
        with self._lock:
            slot = self._slots.pop(user_id, None)
            return len(slot.entries) if slot else 0

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._stats["hits"] + self._stats["misses"]
            hit_rate = self._stats["hits"] / total if total > 0 else 0

            return {
                "hits": self._stats["hits"],
                "misses": self._stats["misses"],
                "hit_rate": f"{hit_rate:.1%}",
                "evictions": self._stats["evictions"],
                "expirations": self._stats["expirations"],
                "users": len(self._slots),
                "max_users": self._max_users,
                "capacity_per_user": self._capacity,
            }

    def __len__(self) -> int:
        with self._lock:
            return sum(len(slot.entries) for slot in self._slots.values())
