"""Read-through lookups across the three tiers."""

from __future__ import annotations

import time

from loguru import logger

from .background import BackgroundQueue
from .cache.distributed import DistributedCache
from .cache.local import ProcessLocalCache
from .exceptions import CacheUnavailable
from .interfaces import TierCache
from .models import MemoryFragment
from .storage.sqlite_store import PersistentStore


def log_unavailable(e: CacheUnavailable) -> None:
    if e.reason == "disabled":
        logger.debug(f"{e.tier} cache disabled, falling through")
    else:
        logger.warning(f"{e}; falling through to the next tier")


class TieredReader:
    """
    Resolves a user's active fragment set: local, then distributed, then
    persistent. Tiers that missed are refilled from the tier that answered;
    the local copy is refilled inline, the distributed one in the background.

    The returned set is always the one the local tier keeps, so a cold read
    and the warm reads after it see the same fragments.

    A local slot never outlives its source: when copied from the distributed
    tier it inherits the earliest entry expiry, when loaded from the store it
    expires after one active-set TTL.
    """

    def __init__(
        self,
        local: ProcessLocalCache,
        distributed: DistributedCache,
        store: PersistentStore,
        background: BackgroundQueue,
    ):
        self._local = local
        self._distributed = distributed
        self._store = store
        self._background = background
        self._tiers: tuple[TierCache, ...] = (local, distributed, store)

    def _local_view(self, fragments: list[MemoryFragment]) -> list[MemoryFragment]:
        return sorted(fragments, key=lambda f: f.rank_key)[: self._local.capacity]

    async def get_all(self, user_id: str) -> list[MemoryFragment]:
        entries = await self._local.get_entries(user_id)
        if entries:
            return [e.fragment for e in entries]

        distributed_ok = True
        try:
            remote = await self._distributed.get_entries(user_id)
        except CacheUnavailable as e:
            log_unavailable(e)
            remote = []
            distributed_ok = False

        if remote:
            expiries = [e.expires_at for e in remote if e.expires_at is not None]
            fragments = self._local_view([e.fragment for e in remote])
            await self._local.replace_all(
                user_id, fragments, expires_at=min(expiries) if expiries else None
            )
            logger.debug(f"Distributed hit for {user_id}: {len(remote)} fragments")
            return fragments

        fragments = await self._store.get_all(
            user_id, limit=self._distributed.config.capacity_per_user
        )
        if not fragments:
            return []

        ttl = self._distributed.config.active_ttl_seconds
        kept = self._local_view(fragments)
        await self._local.replace_all(user_id, kept, expires_at=time.time() + ttl)
        if distributed_ok:
            self._background.submit(
                user_id,
                "write-back",
                lambda: self._distributed.replace_all(user_id, fragments, ttl),
            )
        logger.debug(f"Loaded {len(fragments)} fragments for {user_id} from store")
        return kept

    async def get(self, user_id: str, fragment_id: str) -> MemoryFragment | None:
        """Single fragment, first tier that has it wins. No refill."""
        for tier in self._tiers:
            try:
                fragment = await tier.get(user_id, fragment_id)
            except CacheUnavailable as e:
                log_unavailable(e)
                continue
            if fragment is not None:
                return fragment
        return None
