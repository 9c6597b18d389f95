"""Memory Service - facade over the fragment memory subsystem.

Consumers hand finished conversation turns to ``process_conversation`` and
ask ``get_contextual`` / ``build_context`` for grounding before generating a
reply. Everything else (tiers, locks, background propagation) stays behind
this class.
"""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger
from redis.asyncio import Redis

from .background import BackgroundQueue
from .cache.distributed import DistributedCache
from .cache.local import ProcessLocalCache
from .config import MemoryConfig
from .context import build_memory_context
from .exceptions import CacheUnavailable
from .interfaces import ConversationStore, EmotionClassifier
from .manager import MemoryManager
from .models import MemoryFragment, MemoryStats, MemoryType, ProcessResult
from .retrieval import RelevanceRetriever
from .storage.sqlite_store import PersistentStore
from .tiers import TieredReader, log_unavailable


class MemoryService:
    """Main memory service facade.

    Provides:
    - Fragment extraction from conversation turns (sync or fire-and-forget)
    - Relevance-ranked retrieval and prompt context building
    - Per-user purge, stats, search, feedback and health checks

    The persistent store is opened lazily on first use.
    """

    def __init__(
        self,
        conversation_store: ConversationStore,
        config: MemoryConfig | None = None,
        emotion_classifier: EmotionClassifier | None = None,
        redis_client: Redis | None = None,
    ):
        """Initialize memory service.

        Args:
            conversation_store: Source of finished conversation turns
            config: Memory configuration (uses defaults if not provided)
            emotion_classifier: Fallback classifier for unlabeled turns
            redis_client: Pre-built client; when omitted one is created
                from ``config.distributed_cache.url`` if enabled
        """
        self.config = config or MemoryConfig()
        self._owns_redis = redis_client is None
        if redis_client is not None:
            self.distributed = DistributedCache(redis_client, self.config.distributed_cache)
        else:
            self.distributed = DistributedCache.from_config(self.config.distributed_cache)

        self.store = PersistentStore(self.config.storage.sqlite_db_path)
        self.local = ProcessLocalCache(
            capacity_per_user=self.config.local_cache.capacity_per_user,
            max_users=self.config.local_cache.max_users,
        )
        self._background = BackgroundQueue()
        self._reader = TieredReader(self.local, self.distributed, self.store, self._background)
        self.manager = MemoryManager(
            store=self.store,
            local_cache=self.local,
            distributed_cache=self.distributed,
            conversation_store=conversation_store,
            config=self.config,
            emotion_classifier=emotion_classifier,
            background=self._background,
        )
        self.retriever = RelevanceRetriever(
            reader=self._reader,
            store=self.store,
            local_cache=self.local,
            distributed_cache=self.distributed,
            background=self._background,
            config=self.config.retrieval,
        )
        self._store_initialized = False
        self._init_lock = asyncio.Lock()
        self._turn_tasks: set[asyncio.Task] = set()

        logger.info(
            f"MemoryService initialized: sqlite_db_path={self.config.storage.sqlite_db_path!r}, "
            f"distributed={'on' if self.distributed.enabled else 'off'}"
        )

    async def _ensure_store(self) -> PersistentStore:
        async with self._init_lock:
            if not self._store_initialized:
                await self.store.initialize()
                self._store_initialized = True
        return self.store

    async def initialize(self) -> None:
        await self._ensure_store()

    async def close(self) -> None:
        if self._turn_tasks:
            await asyncio.gather(*self._turn_tasks, return_exceptions=True)
        await self._background.drain()
        if self._owns_redis:
            await self.distributed.close()
        await self.store.close()
        self._store_initialized = False
        logger.info("MemoryService closed")

    async def __aenter__(self) -> "MemoryService":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for background turns and cache propagation to settle."""
        if self._turn_tasks:
            await asyncio.gather(*list(self._turn_tasks), return_exceptions=True)
        await self._background.drain(timeout)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def process_conversation(self, conversation_id: str) -> ProcessResult:
        await self._ensure_store()
        return await self.manager.process_conversation(conversation_id)

    def process_conversation_background(self, conversation_id: str) -> asyncio.Task:
        """Schedule processing without waiting for it."""
        task = asyncio.create_task(
            self.process_conversation(conversation_id),
            name=f"memory-turn-{conversation_id}",
        )
        self._turn_tasks.add(task)
        task.add_done_callback(self._turn_tasks.discard)
        return task

    async def process_history(self, user_id: str, limit: int = 50) -> list[ProcessResult]:
        await self._ensure_store()
        return await self.manager.process_history(user_id, limit)

    async def enforce_capacity(self, user_id: str) -> list[str]:
        await self._ensure_store()
        return await self.manager.enforce_capacity(user_id)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def get_contextual(
        self, user_id: str, query_text: str, k: int | None = None
    ) -> list[MemoryFragment]:
        await self._ensure_store()
        return await self.retriever.get_contextual(user_id, query_text, k)

    async def build_context(
        self, user_id: str, query_text: str, k: int | None = None
    ) -> str:
        """Prompt block for the generation layer; empty when nothing is relevant."""
        fragments = await self.get_contextual(user_id, query_text, k)
        return build_memory_context(fragments)

    async def get_user_memories(
        self,
        user_id: str,
        memory_type: MemoryType | None = None,
        limit: int = 20,
    ) -> list[MemoryFragment]:
        await self._ensure_store()
        fragments = await self._reader.get_all(user_id)
        if memory_type is not None:
            fragments = [f for f in fragments if f.type == MemoryType(memory_type)]
        return fragments[:limit]

    async def get_memory(self, user_id: str, fragment_id: str) -> MemoryFragment | None:
        await self._ensure_store()
        return await self._reader.get(user_id, fragment_id)

    async def get_important_memories(self, user_id: str) -> list[MemoryFragment]:
        await self._ensure_store()
        try:
            important = await self.distributed.get_important(user_id)
            if important:
                return important
        except CacheUnavailable as e:
            log_unavailable(e)

        threshold = self.config.distributed_cache.important_threshold
        fragments = await self.store.get_all(user_id)
        important = [f for f in fragments if f.importance_score > threshold]
        return important[: self.config.distributed_cache.important_limit]

    async def search_memories(
        self,
        user_id: str,
        keyword: str,
        limit: int = 10,
        memory_type: MemoryType | None = None,
    ) -> list[MemoryFragment]:
        store = await self._ensure_store()
        return await store.search(user_id, keyword, limit, memory_type)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def purge_user(self, user_id: str) -> int:
        await self._ensure_store()
        return await self.manager.purge_user(user_id)

    async def get_stats(self, user_id: str) -> MemoryStats:
        await self._ensure_store()
        return await self.manager.get_stats(user_id)

    async def update_importance(
        self, user_id: str, fragment_id: str, importance: float
    ) -> MemoryFragment | None:
        await self._ensure_store()
        return await self.manager.update_importance(user_id, fragment_id, importance)

    async def apply_feedback(
        self, user_id: str, fragment_ids: list[str], feedback: str
    ) -> list[MemoryFragment]:
        await self._ensure_store()
        return await self.manager.apply_feedback(user_id, fragment_ids, feedback)

    def get_cache_stats(self) -> dict[str, Any]:
        return {
            "local": self.local.get_stats(),
            "distributed": self.distributed.get_stats(),
            "pending_background_jobs": len(self._background),
        }

    async def health_check(self) -> dict[str, Any]:
        store_ok = await self.store.ping()
        distributed_ok = await self.distributed.ping()
        return {
            "healthy": store_ok,
            "store": store_ok,
            "distributed": distributed_ok if self.distributed.enabled else None,
            "cache": self.get_cache_stats(),
        }
