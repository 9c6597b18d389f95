"""Memory fragment data models."""

from __future__ import annotations

import hashlib
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


_TRAILING_PUNCT = re.compile(r"[\s,.，。!！?？、;；:：~～…]+$")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """NFKC-fold, lowercase, collapse whitespace and drop trailing punctuation."""
    folded = unicodedata.normalize("NFKC", text).lower().strip()
    folded = _WHITESPACE.sub(" ", folded)
    return _TRAILING_PUNCT.sub("", folded)


class MemoryType(str, Enum):
    FACT = "fact"
    PREFERENCE = "preference"
    IMPORTANT_EVENT = "important_event"
    EMOTION_PATTERN = "emotion_pattern"


class ExtractionStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class MemoryFragment(BaseModel):
    """A short unit of information about a user carried across conversations."""

    id: str = Field(default_factory=_uuid)
    user_id: str
    text: str
    type: MemoryType
    importance_score: float = Field(ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=_utcnow)
    last_accessed: datetime = Field(default_factory=_utcnow)
    access_count: int = Field(default=0, ge=0)
    source_conversation_id: str | None = None
    related_keywords: list[str] = Field(default_factory=list)

    @property
    def dedup_key(self) -> tuple[str, str]:
        digest = hashlib.sha256(normalize_text(self.text).encode("utf-8")).hexdigest()
        return (self.type.value, digest)

    @property
    def rank_key(self) -> tuple[float, float, str]:
        """Sort key placing the most important, then newest fragment first."""
        return (-self.importance_score, -self.created_at.timestamp(), self.id)


@dataclass(frozen=True, slots=True)
class RawCandidate:
    """Unscored span produced by the extractor."""

    text: str
    category: MemoryType
    trigger: str = ""


@dataclass(slots=True)
class CacheEntry:
    """A fragment copy owned by one cache tier."""

    fragment: MemoryFragment
    expires_at: float | None = None  # epoch seconds
    dirty: bool = False

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass(frozen=True, slots=True)
class EvictionCandidate:
    fragment_id: str
    importance_score: float
    last_accessed: datetime

    @property
    def ranking_key(self) -> tuple[float, datetime]:
        return (self.importance_score, self.last_accessed)


class RetrievalQuery(BaseModel):
    user_id: str
    query_text: str
    k: int = Field(default=5, ge=0)


class EmotionResult(BaseModel):
    label: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ConversationRecord(BaseModel):
    """A finished conversation turn as handed over by the conversation store."""

    id: str
    user_id: str
    text: str
    meaningful: bool = False
    emotion_label: str | None = None
    emotion_confidence: float | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class MemoryStats(BaseModel):
    user_id: str
    total_count: int = 0
    type_distribution: dict[str, int] = Field(default_factory=dict)
    important_ratio: float = 0.0
    recent_count: int = 0


class ProcessResult(BaseModel):
    """Outcome of processing one conversation."""

    conversation_id: str
    user_id: str | None = None
    status: ExtractionStatus = ExtractionStatus.SKIPPED
    fragments: list[MemoryFragment] = Field(default_factory=list)
    failed_count: int = 0
    evicted_ids: list[str] = Field(default_factory=list)
    processing_time_ms: float = 0.0
    message: str = ""

    @property
    def type_distribution(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for fragment in self.fragments:
            counts[fragment.type.value] = counts.get(fragment.type.value, 0) + 1
        return counts

    @property
    def average_importance(self) -> float:
        if not self.fragments:
            return 0.0
        return sum(f.importance_score for f in self.fragments) / len(self.fragments)

    def important_count(self, threshold: float = 0.7) -> int:
        return sum(1 for f in self.fragments if f.importance_score > threshold)
