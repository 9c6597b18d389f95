"""Relevance-ranked retrieval of a user's fragments for prompt grounding.

relevance = keyword_weight * min(overlap, overlap_cap)
          + importance_weight * importance
          + recency_bonus (if accessed within the recency window)

A fragment sharing no token with the query scores 0 while
``require_keyword_match`` is on, so importance alone never pulls an
unrelated fragment over the threshold.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from loguru import logger

from .background import BackgroundQueue
from .cache.distributed import DistributedCache
from .cache.local import ProcessLocalCache
from .config import RetrievalConfig
from .exceptions import CacheUnavailable
from .keywords import query_tokens
from .models import MemoryFragment, RetrievalQuery, normalize_text
from .storage.sqlite_store import PersistentStore
from .tiers import TieredReader, log_unavailable


@dataclass(frozen=True, slots=True)
class ScoredFragment:
    fragment: MemoryFragment
    relevance: float
    overlap: int


class RelevanceRetriever:
    """Top-K fragments for a query, with asynchronous access bookkeeping."""

    def __init__(
        self,
        reader: TieredReader,
        store: PersistentStore,
        local_cache: ProcessLocalCache,
        distributed_cache: DistributedCache,
        background: BackgroundQueue,
        config: RetrievalConfig | None = None,
    ):
        self.config = config or RetrievalConfig()
        self._reader = reader
        self._store = store
        self._local = local_cache
        self._distributed = distributed_cache
        self._background = background

    async def get_contextual(
        self, user_id: str, query_text: str, k: int | None = None
    ) -> list[MemoryFragment]:
        k = self.config.default_k if k is None else k
        return await self.retrieve(RetrievalQuery(user_id=user_id, query_text=query_text, k=k))

    async def retrieve(self, query: RetrievalQuery) -> list[MemoryFragment]:
        """Never raises; tier failures degrade to a shorter or empty list."""
        tokens = query_tokens(
            query.query_text, self.config.min_token_length, self.config.max_token_length
        )
        if not tokens or query.k <= 0:
            return []

        context_key = f"{query.k}:{' '.join(tokens)}"
        cached = await self._cached_context(query.user_id, context_key)
        if cached is not None:
            results = cached[: query.k]
            self._record_access(query, results)
            return results

        try:
            fragments = await self._reader.get_all(query.user_id)
        except Exception as e:
            logger.warning(f"Memory lookup failed for {query.user_id}: {e}")
            return []

        ranked = self.rank(fragments, tokens)
        if len(ranked) < query.k and self.config.search_store_on_shortfall:
            extra = await self._search_store(query, tokens, {f.id for f in fragments})
            if extra:
                ranked = self.rank(fragments + extra, tokens)
        results = [scored.fragment for scored in ranked[: query.k]]
        logger.debug(
            f"Retrieved {len(results)}/{len(fragments)} fragments for {query.user_id} "
            f"(tokens={tokens})"
        )

        self._record_access(query, results)
        if self.config.cache_results:
            self._background.submit(
                query.user_id,
                "context",
                lambda: self._distributed.put_context(query.user_id, context_key, results),
            )
        return results

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def relevance(
        self, fragment: MemoryFragment, tokens: list[str], now: datetime | None = None
    ) -> tuple[float, int]:
        now = now or datetime.now(timezone.utc)
        text = normalize_text(fragment.text)
        keywords = set(fragment.related_keywords)
        overlap = sum(1 for token in tokens if token in text or token in keywords)
        if overlap == 0 and self.config.require_keyword_match:
            return 0.0, 0

        score = self.config.keyword_weight * min(overlap, self.config.overlap_cap)
        score += self.config.importance_weight * fragment.importance_score
        window = timedelta(days=self.config.recency_window_days)
        if now - fragment.last_accessed <= window:
            score += self.config.recency_bonus
        return min(score, 1.0), overlap

    def rank(
        self, fragments: list[MemoryFragment], tokens: list[str]
    ) -> list[ScoredFragment]:
        """Fragments above the threshold, best first.

        Ties fall back to importance, then to the input order.
        """
        now = datetime.now(timezone.utc)
        scored = []
        for fragment in fragments:
            score, overlap = self.relevance(fragment, tokens, now)
            if score > self.config.threshold:
                scored.append(ScoredFragment(fragment, score, overlap))
        scored.sort(key=lambda s: (-s.relevance, -s.fragment.importance_score))
        return scored

    # ------------------------------------------------------------------
    # Tier helpers
    # ------------------------------------------------------------------

    async def _search_store(
        self, query: RetrievalQuery, tokens: list[str], seen: set[str]
    ) -> list[MemoryFragment]:
        """Keyword matches outside the cached active set."""
        extra: list[MemoryFragment] = []
        try:
            for token in tokens:
                for fragment in await self._store.search(query.user_id, token, limit=query.k):
                    if fragment.id not in seen:
                        seen.add(fragment.id)
                        extra.append(fragment)
        except Exception as e:
            logger.warning(f"Keyword search failed for {query.user_id}: {e}")
        if extra:
            logger.debug(f"Store search added {len(extra)} fragments for {query.user_id}")
        return extra

    async def _cached_context(
        self, user_id: str, context_key: str
    ) -> list[MemoryFragment] | None:
        if not self.config.cache_results:
            return None
        try:
            return await self._distributed.get_context(user_id, context_key)
        except CacheUnavailable as e:
            log_unavailable(e)
            return None

    def _record_access(self, query: RetrievalQuery, results: list[MemoryFragment]) -> None:
        if not results:
            return
        user_id = query.user_id
        ids = [f.id for f in results]
        accessed_at = datetime.now(timezone.utc)
        self._local.touch(user_id, ids, accessed_at)

        async def write_back() -> None:
            await self._store.record_access(
                user_id, ids, accessed_at, context=query.query_text[:200]
            )
            self._local.mark_clean(user_id, ids)

        self._background.submit(user_id, "access", write_back)
