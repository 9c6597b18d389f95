"""
Memory manager.

Owns the write path: conversation -> gate -> extraction -> scoring ->
persistence -> cache propagation -> capacity enforcement. Writers for the
same user are serialized by a per-user lock; readers never take it.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone

from loguru import logger

from .background import BackgroundQueue
from .cache.distributed import DistributedCache
from .cache.local import ProcessLocalCache
from .config import MemoryConfig
from .exceptions import (
    ConversationNotFoundError,
    ExtractionError,
    PersistenceError,
)
from .extraction import CandidateExtractor, RuleTable
from .interfaces import ConversationStore, EmotionClassifier
from .keywords import fragment_keywords
from .models import (
    ConversationRecord,
    ExtractionStatus,
    MemoryFragment,
    MemoryStats,
    ProcessResult,
    RawCandidate,
)
from .reconciler import CacheReconciler
from .scoring import ImportanceScorer
from .storage.sqlite_store import PersistentStore


class MemoryManager:
    """
    Memory manager

    Features:
    - importance gate: trivial turns produce no side effects
    - partial success: one failed fragment never aborts the others
    - write-through at the store, fire-and-forget at the cache tiers
    - per-user cap enforced by evicting the lowest-ranked fragments
    """

    PERSIST_ATTEMPTS = 2

    def __init__(
        self,
        store: PersistentStore,
        local_cache: ProcessLocalCache,
        distributed_cache: DistributedCache,
        conversation_store: ConversationStore,
        config: MemoryConfig | None = None,
        emotion_classifier: EmotionClassifier | None = None,
        extractor: CandidateExtractor | None = None,
        scorer: ImportanceScorer | None = None,
        reconciler: CacheReconciler | None = None,
        background: BackgroundQueue | None = None,
    ):
        self.config = config or MemoryConfig()
        self._store = store
        self._local = local_cache
        self._distributed = distributed_cache
        self._conversations = conversation_store
        self._classifier = emotion_classifier
        self._extractor = extractor or CandidateExtractor(
            RuleTable.from_config(self.config.extraction)
        )
        self._scorer = scorer or ImportanceScorer(self.config.scoring)
        self._reconciler = reconciler or CacheReconciler()
        self._background = background or BackgroundQueue()
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, user_id: str) -> asyncio.Lock:
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def process_conversation(self, conversation_id: str) -> ProcessResult:
        """Extract, score and store fragments from one conversation turn.

        Never raises: an unknown conversation or a gated-out turn yields a
        SKIPPED result, per-fragment failures yield PARTIAL or FAILED.
        """
        started = time.perf_counter()
        result = ProcessResult(conversation_id=conversation_id)

        try:
            record = await self._fetch_conversation(conversation_id)
        except Exception as e:
            logger.warning(f"Could not load conversation {conversation_id}: {e}")
            result.status = ExtractionStatus.FAILED
            result.message = str(e)
            return result

        if record is None:
            result.message = "conversation not found"
            return result

        result.user_id = record.user_id
        label, confidence = await self._resolve_emotion(record)
        if not self.passes_gate(record, label, confidence):
            logger.debug(f"Conversation {conversation_id} below importance gate, skipped")
            result.message = "below importance gate"
            return result

        async with self._get_lock(record.user_id):
            candidates = self._extractor.extract(record.text)
            stored, failed = await self._store_candidates(record, candidates, label, confidence)

            if stored:
                await self._propagate(record.user_id, stored)
            try:
                result.evicted_ids = await self._enforce_capacity_locked(record.user_id)
            except Exception as e:
                logger.error(f"Capacity enforcement failed for {record.user_id}: {e}")

        evicted = set(result.evicted_ids)
        result.fragments = [f for f in stored if f.id not in evicted]
        result.failed_count = failed
        if failed and not stored:
            result.status = ExtractionStatus.FAILED
        elif failed:
            result.status = ExtractionStatus.PARTIAL
        else:
            result.status = ExtractionStatus.SUCCESS
        if not candidates:
            result.message = "no candidates"
        result.processing_time_ms = (time.perf_counter() - started) * 1000

        logger.info(
            f"Processed conversation {conversation_id} for {record.user_id}: "
            f"{len(result.fragments)} stored "
            f"({result.important_count(self.config.capacity.important_threshold)} important, "
            f"avg importance {result.average_importance:.2f}), {failed} failed, "
            f"{len(result.evicted_ids)} evicted ({result.processing_time_ms:.1f}ms)"
        )
        return result

    async def _fetch_conversation(self, conversation_id: str) -> ConversationRecord | None:
        try:
            return await self._conversations.get_conversation(conversation_id)
        except ConversationNotFoundError:
            return None

    async def _resolve_emotion(
        self, record: ConversationRecord
    ) -> tuple[str | None, float | None]:
        label, confidence = record.emotion_label, record.emotion_confidence
        if label is None and self._classifier is not None:
            try:
                emotion = await self._classifier.analyze(record.text, record.user_id)
                label, confidence = emotion.label, emotion.confidence
            except Exception as e:
                logger.warning(f"Emotion classification failed for {record.id}: {e}")
        return label, confidence

    def passes_gate(
        self,
        record: ConversationRecord,
        label: str | None = None,
        confidence: float | None = None,
    ) -> bool:
        gate = self.config.gate
        if record.meaningful:
            return True
        if confidence is not None and confidence > gate.confidence_threshold:
            return True
        if len(record.text or "") > gate.min_text_length:
            return True
        neutral = {n.upper() for n in gate.neutral_labels}
        return bool(label) and label.upper() not in neutral

    def build_fragment(
        self,
        record: ConversationRecord,
        candidate: RawCandidate,
        label: str | None,
        confidence: float | None,
    ) -> MemoryFragment:
        try:
            vocabulary = self.config.extraction.keywords.get(candidate.category, [])
            return MemoryFragment(
                user_id=record.user_id,
                text=candidate.text,
                type=candidate.category,
                importance_score=self._scorer.score(candidate, label, confidence),
                source_conversation_id=record.id,
                related_keywords=fragment_keywords(
                    candidate.text, vocabulary, self.config.extraction.max_keywords
                ),
            )
        except ValueError as e:
            raise ExtractionError(candidate.text, str(e)) from e

    async def _store_candidates(
        self,
        record: ConversationRecord,
        candidates: list[RawCandidate],
        label: str | None,
        confidence: float | None,
    ) -> tuple[list[MemoryFragment], int]:
        stored: list[MemoryFragment] = []
        failed = 0
        for candidate in candidates:
            try:
                fragment = self.build_fragment(record, candidate, label, confidence)
            except ExtractionError as e:
                logger.warning(f"Skipping candidate: {e}")
                failed += 1
                continue
            try:
                await self._persist(fragment)
            except PersistenceError as e:
                logger.error(str(e))
                failed += 1
                continue
            logger.debug(
                f"Stored {fragment.type.value} fragment {fragment.id} "
                f"(importance={fragment.importance_score:.2f}): {fragment.text}"
            )
            stored.append(fragment)
        return stored, failed

    async def _persist(self, fragment: MemoryFragment) -> None:
        last_error: Exception | None = None
        for attempt in range(1, self.PERSIST_ATTEMPTS + 1):
            try:
                await self._store.put(fragment.user_id, fragment)
                return
            except Exception as e:
                last_error = e
                if attempt < self.PERSIST_ATTEMPTS:
                    logger.warning(f"Persisting fragment {fragment.id} failed, retrying: {e}")
        raise PersistenceError(fragment.id, str(last_error))

    # ------------------------------------------------------------------
    # Cache propagation
    # ------------------------------------------------------------------

    async def _propagate(self, user_id: str, fragments: list[MemoryFragment]) -> None:
        # A cold tier stays cold: filling it with only the new fragments would
        # turn a miss into an incomplete hit.
        entries = await self._local.get_entries(user_id)
        if entries:
            merged = self._reconciler.merge(
                [e.fragment for e in entries], fragments, capacity=self._local.capacity
            )
            await self._local.replace_all(user_id, merged, expires_at=entries[0].expires_at)

        self._background.submit(
            user_id, "propagate", lambda: self._propagate_distributed(user_id, fragments)
        )

    async def _propagate_distributed(
        self, user_id: str, fragments: list[MemoryFragment]
    ) -> None:
        await self._distributed.invalidate_derived(user_id)
        entries = await self._distributed.get_entries(user_id)
        if not entries:
            return
        merged = self._reconciler.merge(
            [e.fragment for e in entries],
            fragments,
            capacity=self._distributed.config.capacity_per_user,
        )
        # Merging keeps the set's deadline; only a refill from the store renews it.
        expiries = [e.expires_at for e in entries if e.expires_at is not None]
        await self._distributed.replace_all(
            user_id, merged, expires_at=min(expiries) if expiries else None
        )
        await self._distributed.refresh_important(user_id, merged)

    # ------------------------------------------------------------------
    # Capacity
    # ------------------------------------------------------------------

    async def enforce_capacity(self, user_id: str) -> list[str]:
        """Evict the lowest-ranked fragments above the per-user cap.

        Returns:
            Ids of the evicted fragments (empty when under the cap)
        """
        async with self._get_lock(user_id):
            return await self._enforce_capacity_locked(user_id)

    async def _enforce_capacity_locked(self, user_id: str) -> list[str]:
        cap = self.config.capacity.max_fragments_per_user
        count = await self._store.count(user_id)
        if count <= cap:
            return []

        candidates = await self._store.eviction_candidates(user_id, count - cap)
        evicted = [c.fragment_id for c in candidates]
        await self._store.delete_many(user_id, evicted)
        for fragment_id in evicted:
            await self._local.delete(user_id, fragment_id)
        self._background.submit(
            user_id, "evict", lambda: self._evict_distributed(user_id, evicted)
        )

        logger.info(
            f"Evicted {len(evicted)} fragments for {user_id} "
            f"(count {count} > cap {cap})"
        )
        return evicted

    async def _evict_distributed(self, user_id: str, fragment_ids: list[str]) -> None:
        for fragment_id in fragment_ids:
            await self._distributed.delete(user_id, fragment_id)
        await self._distributed.invalidate_derived(user_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def purge_user(self, user_id: str) -> int:
        """Remove every fragment of a user from all tiers.

        Returns:
            Number of persisted fragments removed (0 for an unknown user)
        """
        async with self._get_lock(user_id):
            removed = await self._store.purge_user(user_id)
            await self._local.clear(user_id)
            # Queued behind pending propagation so nothing is re-added afterwards.
            await self._background.submit(
                user_id, "purge", lambda: self._distributed.clear(user_id)
            )
        logger.info(f"Purged {removed} fragments for {user_id}")
        return removed

    async def get_stats(self, user_id: str) -> MemoryStats:
        total = await self._store.count(user_id)
        if total == 0:
            return MemoryStats(user_id=user_id)

        important = await self._store.count_above(
            user_id, self.config.capacity.important_threshold
        )
        since = datetime.now(timezone.utc) - timedelta(days=self.config.capacity.recent_days)
        return MemoryStats(
            user_id=user_id,
            total_count=total,
            type_distribution=await self._store.type_distribution(user_id),
            important_ratio=important / total,
            recent_count=await self._store.count_since(user_id, since),
        )

    async def update_importance(
        self, user_id: str, fragment_id: str, importance: float
    ) -> MemoryFragment | None:
        """Write a new importance to the store.

        The local slot is dropped and the distributed copy is overwritten in
        the background. Should that write fail, the stale copy still expires
        with its set, since merges never extend a set's deadline.
        """
        async with self._get_lock(user_id):
            updated = await self._store.update_importance(user_id, fragment_id, importance)
            self._local.invalidate(user_id)
            if updated is not None:
                self._background.submit(
                    user_id, "update", lambda: self._refresh_distributed(user_id, updated)
                )
        if updated is None:
            logger.debug(f"Importance update for unknown fragment {fragment_id}")
        return updated

    async def _refresh_distributed(self, user_id: str, fragment: MemoryFragment) -> None:
        await self._distributed.refresh_fragment(user_id, fragment)
        await self._distributed.invalidate_derived(user_id)

    async def apply_feedback(
        self, user_id: str, fragment_ids: list[str], feedback: str
    ) -> list[MemoryFragment]:
        """Nudge importance of fragments used in a response by its feedback."""
        delta = self.config.feedback.deltas.get(feedback.lower())
        if delta is None:
            logger.warning(f"Unknown feedback {feedback!r}, ignored")
            return []

        adjustment = delta * self.config.feedback.step
        updated: list[MemoryFragment] = []
        for fragment_id in fragment_ids:
            current = await self._store.get(user_id, fragment_id)
            if current is None:
                continue
            fragment = await self.update_importance(
                user_id, fragment_id, current.importance_score + adjustment
            )
            if fragment is not None:
                updated.append(fragment)
        logger.info(f"Applied {feedback} feedback to {len(updated)} fragments for {user_id}")
        return updated

    async def process_history(self, user_id: str, limit: int = 50) -> list[ProcessResult]:
        """Re-run extraction over a user's recent meaningful conversations."""
        try:
            records = await self._conversations.list_conversations(user_id, limit)
        except Exception as e:
            logger.warning(f"Could not list conversations for {user_id}: {e}")
            return []

        threshold = self.config.gate.confidence_threshold
        results = []
        for record in records:
            confident = (
                record.emotion_confidence is not None
                and record.emotion_confidence > threshold
            )
            if record.meaningful or confident:
                results.append(await self.process_conversation(record.id))
        logger.info(f"Processed {len(results)} historical conversations for {user_id}")
        return results

    async def drain(self, timeout: float | None = None) -> None:
        await self._background.drain(timeout)

