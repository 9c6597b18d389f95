"""
Memory subsystem exceptions.

Only ConfigError and ConversationNotFoundError ever escape the public
operations; the rest are raised internally and turned into degraded results.
"""


class MemorySystemError(Exception):
    """Base class for memory subsystem errors."""

    pass


class ExtractionError(MemorySystemError):
    """A candidate could not be turned into a fragment."""

    def __init__(self, text: str, reason: str):
        self.text = text
        self.reason = reason
        super().__init__(f"Extraction failed for {text!r}: {reason}")


class ScoringError(MemorySystemError):
    """Importance scoring failed; callers fall back to the base value."""

    pass


class PersistenceError(MemorySystemError):
    """A fragment could not be written to the persistent store."""

    def __init__(self, fragment_id: str, reason: str):
        self.fragment_id = fragment_id
        self.reason = reason
        super().__init__(f"Persisting fragment {fragment_id} failed: {reason}")


class CacheUnavailable(MemorySystemError):
    """A cache tier timed out, errored or is disabled."""

    def __init__(self, tier: str, reason: str):
        self.tier = tier
        self.reason = reason
        super().__init__(f"{tier} cache unavailable: {reason}")


class ConversationNotFoundError(MemorySystemError):
    """The conversation store has no record with the given id."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class ConfigError(MemorySystemError):
    """Configuration file could not be read or validated."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)
