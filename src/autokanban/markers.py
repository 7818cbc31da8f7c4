from __future__ import annotations

import re
from dataclasses import dataclass

FALLBACK_CHARS = 2000
DEFAULT_WINDOW = 30

# Tags the agent is told to end each phase with; the Spanish spellings are still accepted.
PHASE_TAGS: dict[str, tuple[str, ...]] = {
    "plan": ("PLAN",),
    "code": ("RESULT", "RESULTADO"),
    "review": ("REVIEW",),
    "test": ("TESTS",),
    "scope": ("SCOPE",),
}

POSITIVE_WORDS: dict[str, tuple[str, ...]] = {
    "code": ("completed", "completado"),
    "review": ("approved", "aprobado"),
    "test": ("ok",),
    "scope": ("ok",),
}

NEGATIVE_WORDS: dict[str, tuple[str, ...]] = {
    "code": ("failed", "fallido"),
    "review": ("rejected", "rechazado"),
    "test": ("failed", "fallido"),
    "scope": ("incomplete", "incompleto"),
}


@dataclass(frozen=True, slots=True)
class MarkerResult:
    found: bool
    tag: str | None = None
    value: str | None = None


def find_marker(
    output: str,
    tags: tuple[str, ...] | list[str],
    window: int = DEFAULT_WINDOW,
) -> MarkerResult:
    """Locate the last ``TAG:`` line within the final ``window`` lines of ``output``.

    An empty value takes the non-empty lines that follow the tag, and failing that the
    last ``FALLBACK_CHARS`` characters of the whole output.
    """
    stripped = output.strip()
    if not stripped or not tags:
        return MarkerResult(found=False)
    lines = stripped.split("\n")[-window:]
    for index in range(len(lines) - 1, -1, -1):
        line = lines[index].strip()
        for tag in tags:
            prefix = f"{tag}:"
            if not line.startswith(prefix):
                continue
            value = line[len(prefix) :].strip()
            if not value:
                value = "\n".join(item.strip() for item in lines[index + 1 :] if item.strip())
            if not value:
                value = stripped[-FALLBACK_CHARS:]
            return MarkerResult(found=True, tag=tag, value=value)
    return MarkerResult(found=False)


def _starts_with_word(value: str, words: tuple[str, ...]) -> str | None:
    lowered = value.lower()
    for word in words:
        if re.match(rf"{re.escape(word)}\b", lowered):
            return word
    return None


def classify(phase: str, marker: MarkerResult, exit_code: int | None) -> bool:
    """Success for ``phase``: the outcome word when a tag was found, else a zero exit code."""
    if not marker.found or marker.value is None:
        return exit_code == 0
    return _starts_with_word(marker.value, POSITIVE_WORDS[phase]) is not None


def strip_outcome_word(phase: str, value: str | None) -> str:
    """Drop the leading outcome word and separator, e.g. ``"approved - fine"`` -> ``"fine"``."""
    if not value:
        return ""
    words = POSITIVE_WORDS.get(phase, ()) + NEGATIVE_WORDS.get(phase, ())
    for word in sorted(words, key=len, reverse=True):
        match = re.match(rf"{re.escape(word)}\b\s*[-:–—]?\s*", value, re.IGNORECASE)
        if match:
            return value[match.end() :].strip()
    return value.strip()
