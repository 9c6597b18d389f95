"""Formatting retrieved fragments as a hidden prompt block."""

from __future__ import annotations

from .models import MemoryFragment, MemoryType

CONTEXT_HEADER = "[User memory background]"
CONTEXT_GUIDANCE = (
    "The following is known about this user. Do not quote it directly; "
    "use it to adapt the tone and content of your reply."
)

_TYPE_TITLES: dict[MemoryType, str] = {
    MemoryType.FACT: "Facts",
    MemoryType.PREFERENCE: "Preferences",
    MemoryType.IMPORTANT_EVENT: "Important events",
    MemoryType.EMOTION_PATTERN: "Emotion patterns",
}


def build_memory_context(
    fragments: list[MemoryFragment],
    max_per_type: int = 3,
    max_text_length: int = 100,
) -> str:
    """Group fragments by type into a system prompt block.

    Returns an empty string when there is nothing to inject, so callers can
    skip the block entirely.
    """
    if not fragments:
        return ""

    grouped: dict[MemoryType, list[MemoryFragment]] = {}
    for fragment in fragments:
        grouped.setdefault(fragment.type, []).append(fragment)

    lines = [CONTEXT_HEADER, CONTEXT_GUIDANCE, ""]
    for memory_type in MemoryType:
        group = grouped.get(memory_type)
        if not group:
            continue
        lines.append(f"{_TYPE_TITLES[memory_type]}:")
        for fragment in group[:max_per_type]:
            text = fragment.text
            if len(text) > max_text_length:
                text = text[:max_text_length] + "..."
            lines.append(f"  - {text}")
    return "\n".join(lines)
