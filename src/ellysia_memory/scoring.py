"""Importance scoring for extracted candidates."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from loguru import logger

from .config import ScoringConfig
from .exceptions import ScoringError
from .models import MemoryType, RawCandidate


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class ImportanceScorer:
    """Maps a candidate plus emotion metadata to an importance in [0, 1].

    Policy: per-type base value, a bonus for negative emotions and a
    smaller one for positive emotions, a term proportional to the
    classifier confidence, and a small bonus for long spans. Any failure
    yields the type's base value instead of an exception.
    """

    config: ScoringConfig = field(default_factory=ScoringConfig)

    def base_value(self, category: MemoryType | str | None) -> float:
        try:
            return self.config.base_importance[MemoryType(category)]
        except (KeyError, ValueError):
            return self.config.fallback_importance

    def score(
        self,
        candidate: RawCandidate,
        emotion_label: str | None = None,
        emotion_confidence: float | None = None,
    ) -> float:
        category = getattr(candidate, "category", None)
        try:
            return self._score(candidate, emotion_label, emotion_confidence)
        except Exception as e:
            logger.debug(f"Scoring fell back to base value for {candidate!r}: {e}")
            return _clamp(self.base_value(category))

    def _score(
        self,
        candidate: RawCandidate,
        emotion_label: str | None,
        emotion_confidence: float | None,
    ) -> float:
        category = MemoryType(candidate.category)
        importance = self.config.base_importance[category]

        if emotion_label:
            label = str(emotion_label).upper()
            if any(neg in label for neg in self.config.negative_labels):
                importance += self.config.negative_bonus
            elif any(pos in label for pos in self.config.positive_labels):
                importance += self.config.positive_bonus

        if emotion_confidence is not None:
            confidence = float(emotion_confidence)
            if math.isnan(confidence) or math.isinf(confidence):
                raise ScoringError(f"confidence is not finite: {emotion_confidence!r}")
            importance += _clamp(confidence) * self.config.confidence_weight

        if len(candidate.text) > self.config.long_text_threshold:
            importance += self.config.long_text_bonus

        return _clamp(importance)
