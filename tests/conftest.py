"""
Memory subsystem test fixtures

In-memory conversation store and emotion classifier, fakeredis standing in
for Redis, and a throwaway SQLite file per test.
"""

from __future__ import annotations

import os
import tempfile

import pytest
from fakeredis import aioredis as fake_aioredis

from ellysia_memory.background import BackgroundQueue
from ellysia_memory.cache.distributed import DistributedCache
from ellysia_memory.cache.local import ProcessLocalCache
from ellysia_memory.config import (
    CapacityConfig,
    DistributedCacheConfig,
    MemoryConfig,
    StorageConfig,
)
from ellysia_memory.exceptions import ConversationNotFoundError
from ellysia_memory.manager import MemoryManager
from ellysia_memory.models import ConversationRecord, EmotionResult
from ellysia_memory.retrieval import RelevanceRetriever
from ellysia_memory.storage.sqlite_store import PersistentStore
from ellysia_memory.tiers import TieredReader


class FakeConversationStore:
    """Dict-backed conversation store."""

    def __init__(self) -> None:
        self.records: dict[str, ConversationRecord] = {}

    def add(self, conversation_id: str, user_id: str, text: str, **kwargs) -> ConversationRecord:
        record = ConversationRecord(id=conversation_id, user_id=user_id, text=text, **kwargs)
        self.records[conversation_id] = record
        return record

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        if conversation_id.startswith("missing-raise"):
            raise ConversationNotFoundError(conversation_id)
        return self.records.get(conversation_id)

    async def list_conversations(self, user_id: str, limit: int = 50) -> list[ConversationRecord]:
        records = [r for r in self.records.values() if r.user_id == user_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]


class FakeEmotionClassifier:
    def __init__(self, label: str = "HAPPY", confidence: float = 0.9, fail: bool = False) -> None:
        self.label = label
        self.confidence = confidence
        self.fail = fail
        self.calls: list[tuple[str, str]] = []

    async def analyze(self, text: str, user_id: str) -> EmotionResult:
        self.calls.append((text, user_id))
        if self.fail:
            raise RuntimeError("classifier offline")
        return EmotionResult(label=self.label, confidence=self.confidence)


def make_config(db_path: str, **overrides) -> MemoryConfig:
    return MemoryConfig(
        storage=StorageConfig(sqlite_db_path=db_path),
        distributed_cache=overrides.pop(
            "distributed_cache", DistributedCacheConfig(timeout_ms=1000)
        ),
        capacity=overrides.pop("capacity", CapacityConfig()),
        **overrides,
    )


@pytest.fixture
def conversations() -> FakeConversationStore:
    return FakeConversationStore()


@pytest.fixture
async def redis_client():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        s = PersistentStore(db_path=os.path.join(tmpdir, "test.db"))
        await s.initialize()
        yield s
        await s.close()


@pytest.fixture
def config(tmp_path) -> MemoryConfig:
    return make_config(str(tmp_path / "memory.db"))


@pytest.fixture
def local_cache(config: MemoryConfig) -> ProcessLocalCache:
    return ProcessLocalCache(
        capacity_per_user=config.local_cache.capacity_per_user,
        max_users=config.local_cache.max_users,
    )


@pytest.fixture
def distributed(redis_client, config: MemoryConfig) -> DistributedCache:
    return DistributedCache(redis_client, config.distributed_cache)


@pytest.fixture
def background() -> BackgroundQueue:
    return BackgroundQueue()


@pytest.fixture
def manager(store, local_cache, distributed, conversations, config, background) -> MemoryManager:
    return MemoryManager(
        store=store,
        local_cache=local_cache,
        distributed_cache=distributed,
        conversation_store=conversations,
        config=config,
        background=background,
    )


@pytest.fixture
def retriever(store, local_cache, distributed, config, background) -> RelevanceRetriever:
    reader = TieredReader(local_cache, distributed, store, background)
    return RelevanceRetriever(
        reader=reader,
        store=store,
        local_cache=local_cache,
        distributed_cache=distributed,
        background=background,
        config=config.retrieval,
    )
