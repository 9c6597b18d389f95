"""Tokenization shared by extraction (fragment keywords) and retrieval (query tokens)."""

from __future__ import annotations

import re
from typing import Iterable, Sequence

from .models import normalize_text

_SPLIT = re.compile(r"[\s,.，。!！?？、;；:：\"'“”‘’()（）]+")


def split_words(text: str) -> list[str]:
    return [word for word in _SPLIT.split(normalize_text(text)) if word]


def _dedup(tokens: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for token in tokens:
        if token not in seen:
            seen.add(token)
            ordered.append(token)
    return ordered


def query_tokens(text: str, min_length: int = 2, max_length: int = 5) -> list[str]:
    """Split a query on whitespace/punctuation and keep mid-length tokens."""
    if not text:
        return []
    return _dedup(
        word for word in split_words(text) if min_length <= len(word) <= max_length
    )


def fragment_keywords(
    text: str, vocabulary: Sequence[str], max_keywords: int = 10
) -> list[str]:
    """Keywords stored with a fragment.

    Vocabulary terms found in the text come first, followed by the short
    (2-4 character) words of the text itself.
    """
    normalized = normalize_text(text)
    hits = [normalize_text(term) for term in vocabulary if term and normalize_text(term) in normalized]
    words = [word for word in split_words(text) if 2 <= len(word) <= 4]
    return _dedup(hits + words)[:max_keywords]
