"""Tests for ImportanceScorer."""

from __future__ import annotations

import pytest

from ellysia_memory.config import ScoringConfig
from ellysia_memory.models import MemoryType, RawCandidate
from ellysia_memory.scoring import ImportanceScorer


@pytest.fixture
def scorer() -> ImportanceScorer:
    return ImportanceScorer()


def _candidate(category: MemoryType, text: str = "蓝色") -> RawCandidate:
    return RawCandidate(text=text, category=category)


def test_base_values_are_ordered(scorer: ImportanceScorer) -> None:
    event = scorer.score(_candidate(MemoryType.IMPORTANT_EVENT))
    fact = scorer.score(_candidate(MemoryType.FACT))
    preference = scorer.score(_candidate(MemoryType.PREFERENCE))
    pattern = scorer.score(_candidate(MemoryType.EMOTION_PATTERN))
    assert event > fact > preference > pattern


def test_negative_emotion_bonus_exceeds_positive(scorer: ImportanceScorer) -> None:
    base = scorer.score(_candidate(MemoryType.PREFERENCE))
    sad = scorer.score(_candidate(MemoryType.PREFERENCE), "SAD")
    happy = scorer.score(_candidate(MemoryType.PREFERENCE), "happy")
    calm = scorer.score(_candidate(MemoryType.PREFERENCE), "CALM")
    assert sad == pytest.approx(base + 0.1)
    assert happy == pytest.approx(base + 0.05)
    assert calm == pytest.approx(base)


def test_confidence_and_length_terms(scorer: ImportanceScorer) -> None:
    base = scorer.score(_candidate(MemoryType.PREFERENCE))
    confident = scorer.score(_candidate(MemoryType.PREFERENCE), None, 0.8)
    long_text = scorer.score(_candidate(MemoryType.PREFERENCE, "长" * 31))
    assert confident == pytest.approx(base + 0.08)
    assert long_text == pytest.approx(base + 0.05)


def test_result_is_clamped(scorer: ImportanceScorer) -> None:
    value = scorer.score(_candidate(MemoryType.IMPORTANT_EVENT, "长" * 40), "ANXIOUS", 1.0)
    assert value == 1.0


@pytest.mark.parametrize("confidence", ["not-a-number", float("nan"), object()])
def test_malformed_confidence_falls_back_to_base(scorer: ImportanceScorer, confidence) -> None:
    value = scorer.score(_candidate(MemoryType.FACT), "SAD", confidence)
    assert value == scorer.base_value(MemoryType.FACT)


def test_malformed_candidate_never_raises(scorer: ImportanceScorer) -> None:
    value = scorer.score(RawCandidate(text=None, category="nonsense"))  # type: ignore[arg-type]
    assert value == ScoringConfig().fallback_importance


def test_custom_weights() -> None:
    scorer = ImportanceScorer(
        ScoringConfig(base_importance={MemoryType.FACT: 0.2}, negative_bonus=0.5)
    )
    assert scorer.score(_candidate(MemoryType.FACT), "ANGRY") == pytest.approx(0.7)
