from __future__ import annotations

from typing import Final

MOMENT: Final = "moment"
STORY: Final = "story"
MEMENTO: Final = "memento"

ALLOWED_MEMORY_KINDS: Final[tuple[str, ...]] = (MOMENT, STORY, MEMENTO)

PHASE_TEXT_PROCESSING: Final = "text_processing"
PHASE_NARRATIVE_GENERATION: Final = "narrative_generation"


def normalize_memory_kind(kind: str) -> str:
    return (kind or "").strip().lower()


def validate_memory_kind(kind: str) -> str:
    normalized = normalize_memory_kind(kind)
    if normalized in ALLOWED_MEMORY_KINDS:
        return normalized
    raise ValueError(
        f"Invalid memory kind '{normalized}'. Allowed kinds: {', '.join(ALLOWED_MEMORY_KINDS)}"
    )


def requires_audio(kind: str) -> bool:
    return normalize_memory_kind(kind) == STORY


def is_narrative(kind: str) -> bool:
    return normalize_memory_kind(kind) == STORY
