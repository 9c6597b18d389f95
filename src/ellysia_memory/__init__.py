"""
Ellysia memory - conversational memory fragments

Extracts short facts, preferences, events and emotion patterns from
conversation turns, scores their importance, keeps them in a three-tier
store (process-local, Redis, SQLite) and serves relevance-ranked subsets
back as hidden prompt context.
"""

from .models import (
    ConversationRecord,
    EmotionResult,
    ExtractionStatus,
    MemoryFragment,
    MemoryStats,
    MemoryType,
    ProcessResult,
    RawCandidate,
    RetrievalQuery,
)
from .config import MemoryConfig, load_config
from .exceptions import (
    CacheUnavailable,
    ConfigError,
    ConversationNotFoundError,
    ExtractionError,
    MemorySystemError,
    PersistenceError,
    ScoringError,
)
from .extraction import CandidateExtractor, RuleTable
from .scoring import ImportanceScorer
from .reconciler import CacheReconciler
from .manager import MemoryManager
from .retrieval import RelevanceRetriever
from .context import build_memory_context
from .service import MemoryService

__all__ = [
    "ConversationRecord",
    "EmotionResult",
    "ExtractionStatus",
    "MemoryFragment",
    "MemoryStats",
    "MemoryType",
    "ProcessResult",
    "RawCandidate",
    "RetrievalQuery",
    "MemoryConfig",
    "load_config",
    "CacheUnavailable",
    "ConfigError",
    "ConversationNotFoundError",
    "ExtractionError",
    "MemorySystemError",
    "PersistenceError",
    "ScoringError",
    "CandidateExtractor",
    "RuleTable",
    "ImportanceScorer",
    "CacheReconciler",
    "MemoryManager",
    "RelevanceRetriever",
    "build_memory_context",
    "MemoryService",
]
