"""Markdown comparison helpers used to decide dirtiness, reloads and risky saves."""

from __future__ import annotations

import re
from dataclasses import dataclass

__all__ = [
    "ShrinkCheck",
    "check_shrink",
    "has_meaningful_diff",
    "normalize_markdown",
]

# Applied in order; each entry is (pattern, replacement).
_COSMETIC_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\r\n"), "\n"),
    (re.compile(r"[ \t]+$", re.MULTILINE), ""),
    (re.compile(r"\n{3,}"), "\n\n"),
    (re.compile(r"__(.+?)__"), r"**\1**"),
    (re.compile(r"^(\*{3,}|-{3,}|_{3,})$", re.MULTILINE), "---"),
    (re.compile(r"&nbsp;"), " "),
    (re.compile("\u00a0"), " "),
    (re.compile(r"^([ \t]*)[+\-] ", re.MULTILINE), r"\1* "),
    (re.compile(r"^([ \t]*)\d+[.)\]] ", re.MULTILINE), r"\g<1>1. "),
    (re.compile(r"^(#{1,6})([^ #])", re.MULTILINE), r"\1 \2"),
)
_LIST_INDENT = re.compile(r"^( +)(\*|-|\d+[.)]) ", re.MULTILINE)

SHRINK_MIN_BYTES = 1024
SHRINK_MIN_DELTA = 256
SHRINK_KEEP_RATIO = 0.85


def normalize_markdown(text: str) -> str:
    """Rewrite ``text`` into a canonical form that ignores rendering-neutral differences.

    Line endings, trailing whitespace, runs of blank lines, bold and rule
    spellings, non-breaking spaces, list markers, ordered list numbers, heading
    spacing and list indentation (rounded up to even widths) are all folded.
    """

    result = text
    for pattern, replacement in _COSMETIC_RULES:
        result = pattern.sub(replacement, result)
    result = _LIST_INDENT.sub(_even_indent, result)
    return result.strip()


def has_meaningful_diff(left: str, right: str) -> bool:
    """Return ``True`` when the two texts differ in more than cosmetic ways."""

    if left == right:
        return False
    return normalize_markdown(left) != normalize_markdown(right)


@dataclass(slots=True, frozen=True)
class ShrinkCheck:
    """Outcome of :func:`check_shrink`."""

    suspicious: bool
    removed_percent: int = 0


def check_shrink(existing: str, incoming: str) -> ShrinkCheck:
    """Flag a save that would drop a large share of a file's content.

    Files under 1 KiB, growth and removals of less than 256 bytes always pass.
    Otherwise the save is suspicious when it keeps less than 85% of the bytes.
    """

    existing_bytes = len(existing.encode("utf-8"))
    incoming_bytes = len(incoming.encode("utf-8"))
    if existing_bytes < SHRINK_MIN_BYTES or incoming_bytes >= existing_bytes:
        return ShrinkCheck(suspicious=False)
    delta = existing_bytes - incoming_bytes
    if delta < SHRINK_MIN_DELTA:
        return ShrinkCheck(suspicious=False)
    if incoming_bytes < existing_bytes * SHRINK_KEEP_RATIO:
        return ShrinkCheck(suspicious=True, removed_percent=int(delta / existing_bytes * 100))
    return ShrinkCheck(suspicious=False)


def _even_indent(match: re.Match[str]) -> str:
    width = len(match.group(1))
    return " " * (((width + 1) // 2) * 2) + match.group(2) + " "
