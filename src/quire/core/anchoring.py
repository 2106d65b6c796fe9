"""Re-anchoring of highlights whose offsets drifted after the text changed."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

__all__ = ["AnchorConfidence", "AnchorResult", "TextAnchor", "create_anchor", "resolve_anchor"]

CONTEXT_CHARS = 30


class AnchorConfidence(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    ORPHANED = "orphaned"


@dataclass(slots=True, frozen=True)
class TextAnchor:
    """Highlighted text plus the characters surrounding it when it was created."""

    text: str
    prefix: str
    suffix: str
    start: int
    end: int


@dataclass(slots=True, frozen=True)
class AnchorResult:
    start: int
    end: int
    confidence: AnchorConfidence


def create_anchor(full_text: str, start: int, end: int, *, context: int = CONTEXT_CHARS) -> TextAnchor:
    """Capture ``full_text[start:end]`` along with up to ``context`` chars on each side."""

    return TextAnchor(
        text=full_text[start:end],
        prefix=full_text[max(0, start - context) : start],
        suffix=full_text[end : min(len(full_text), end + context)],
        start=start,
        end=end,
    )


def resolve_anchor(full_text: str, anchor: TextAnchor) -> AnchorResult:
    """Locate ``anchor`` in ``full_text``.

    The original offsets win when the text is still there. Otherwise the
    text is searched together with its context, then alone, preferring the
    occurrence whose surroundings best match the recorded prefix/suffix.
    Anchors that cannot be found keep their old offsets and are reported as
    orphaned.
    """

    length = len(anchor.text)
    if full_text[anchor.start : anchor.start + length] == anchor.text:
        return AnchorResult(anchor.start, anchor.start + length, AnchorConfidence.EXACT)

    with_context = full_text.find(anchor.prefix + anchor.text + anchor.suffix)
    if with_context != -1:
        start = with_context + len(anchor.prefix)
        return AnchorResult(start, start + length, AnchorConfidence.EXACT)

    best_index = -1
    best_score = -1
    index = full_text.find(anchor.text)
    while index != -1 and length:
        score = _context_score(full_text, index, anchor)
        if score > best_score:
            best_index, best_score = index, score
        index = full_text.find(anchor.text, index + 1)

    if best_index != -1:
        return AnchorResult(best_index, best_index + length, AnchorConfidence.FUZZY)
    return AnchorResult(anchor.start, anchor.end, AnchorConfidence.ORPHANED)


def _context_score(full_text: str, index: int, anchor: TextAnchor) -> int:
    # Characters are compared outward from the highlight boundaries.
    actual_prefix = full_text[max(0, index - len(anchor.prefix)) : index]
    after = index + len(anchor.text)
    actual_suffix = full_text[after : after + len(anchor.suffix)]

    score = 0
    for offset in range(1, min(len(actual_prefix), len(anchor.prefix)) + 1):
        if anchor.prefix[-offset] == actual_prefix[-offset]:
            score += 1
    for offset in range(min(len(actual_suffix), len(anchor.suffix))):
        if anchor.suffix[offset] == actual_suffix[offset]:
            score += 1
    return score
