"""
Memory subsystem interfaces.

Collaborators outside this package (emotion classification, the
conversation log) and the common tier contract are declared as Protocols
so implementations stay decoupled from the orchestration code.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import ConversationRecord, EmotionResult, MemoryFragment


@runtime_checkable
class EmotionClassifier(Protocol):
    """Pluggable emotion classifier."""

    async def analyze(self, text: str, user_id: str) -> EmotionResult:
        """
        Classify the emotion of one utterance.

        Args:
            text: Utterance text
            user_id: Speaker, for classifiers that keep per-user state

        Returns:
            Label and confidence in [0, 1]
        """
        ...


@runtime_checkable
class ConversationStore(Protocol):
    """Read access to finished conversation turns."""

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        """
        Fetch one conversation turn.

        Returns:
            The record, or None when unknown. Implementations may raise
            ConversationNotFoundError instead.
        """
        ...

    async def list_conversations(
        self, user_id: str, limit: int = 50
    ) -> list[ConversationRecord]:
        """Most recent turns for a user, newest first."""
        ...


@runtime_checkable
class TierCache(Protocol):
    """Common contract of the three storage tiers."""

    name: str

    async def get(self, user_id: str, key: str) -> MemoryFragment | None: ...

    async def get_all(self, user_id: str) -> list[MemoryFragment]: ...

    async def put(
        self, user_id: str, fragment: MemoryFragment, ttl: float | None = None
    ) -> None: ...

    async def delete(self, user_id: str, key: str) -> bool: ...
