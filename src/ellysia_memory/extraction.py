"""Rule-driven candidate extraction.

A rule associates a trigger phrase with a memory type. When the phrase
occurs in an utterance, the text following it, up to the first sentence
delimiter or the type's maximum span length, becomes a candidate. Phrases
may contain ``...`` as a bounded gap (``我一...就`` matches ``我一紧张就``);
the span then starts right after the first literal segment.

Extraction is synchronous and pure. Duplicate spans are left in place for
the reconciler to collapse.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from .config import ExtractionConfig
from .models import MemoryType, RawCandidate

_GAP = "..."


@dataclass(frozen=True, slots=True)
class _Rule:
    """A compiled trigger phrase."""

    pattern: re.Pattern[str]
    phrase: str
    category: MemoryType


@dataclass(frozen=True)
class RuleTable:
    """Trigger phrases and span limits per memory type."""

    triggers: Mapping[MemoryType, Sequence[str]]
    max_lengths: Mapping[MemoryType, int]
    delimiters: str = "。，？！；.,?!;\n"
    gap_max_length: int = 20
    _rules: tuple[_Rule, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_rules", self._compile())

    @classmethod
    def from_config(cls, config: ExtractionConfig) -> "RuleTable":
        return cls(
            triggers=config.triggers,
            max_lengths=config.max_lengths,
            delimiters=config.sentence_delimiters,
            gap_max_length=config.gap_max_length,
        )

    @property
    def rules(self) -> tuple[_Rule, ...]:
        return self._rules

    def max_length(self, category: MemoryType) -> int:
        return self.max_lengths.get(category, 50)

    def _compile(self) -> tuple[_Rule, ...]:
        not_delim = f"[^{re.escape(self.delimiters)}]"
        rules: list[_Rule] = []
        for category in MemoryType:
            for phrase in self.triggers.get(category, ()):
                if not phrase or not phrase.replace(_GAP, "").strip():
                    continue
                head, *rest = phrase.split(_GAP)
                regex = re.escape(head)
                if rest:
                    tail = "".join(
                        f"{not_delim}{{1,{self.gap_max_length}}}?{re.escape(seg)}"
                        for seg in rest
                    )
                    regex += f"(?={tail})"
                rules.append(
                    _Rule(
                        pattern=re.compile(regex, re.IGNORECASE),
                        phrase=phrase,
                        category=category,
                    )
                )
        return tuple(rules)


@dataclass
class CandidateExtractor:
    """Extracts unscored candidates from a single utterance."""

    rule_table: RuleTable = field(
        default_factory=lambda: RuleTable.from_config(ExtractionConfig())
    )

    def extract(
        self, utterance: str, rule_table: RuleTable | None = None
    ) -> list[RawCandidate]:
        """Return one candidate per trigger occurrence, in utterance order.

        When several triggers start at the same position (``我爱`` and
        ``我爱好``), only the longest one fires.
        """
        if not utterance or not utterance.strip():
            return []
        table = rule_table or self.rule_table

        best: dict[int, tuple[int, _Rule]] = {}
        for rule in table.rules:
            for match in rule.pattern.finditer(utterance):
                current = best.get(match.start())
                if current is None or match.end() > current[0]:
                    best[match.start()] = (match.end(), rule)

        candidates: list[RawCandidate] = []
        for start in sorted(best):
            end, rule = best[start]
            span = self._span_after(utterance, end, table, rule.category)
            if span:
                candidates.append(
                    RawCandidate(text=span, category=rule.category, trigger=rule.phrase)
                )
        return candidates

    @staticmethod
    def _span_after(
        utterance: str, offset: int, table: RuleTable, category: MemoryType
    ) -> str:
        rest = utterance[offset:].lstrip()
        cut = min(len(rest), table.max_length(category))
        for index, char in enumerate(rest[:cut]):
            if char in table.delimiters:
                cut = index
                break
        return rest[:cut].strip()
