"""Render a document's highlights and margin notes as a markdown digest."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Iterable, Sequence

from .models import Document, DocumentSource, Highlight, MarginNote

__all__ = ["EMPTY_EXPORT", "format_annotations_markdown"]

EMPTY_EXPORT = "_No annotations to export._"


def format_annotations_markdown(
    document: Document,
    highlights: Sequence[Highlight],
    margin_notes: Iterable[MarginNote],
    full_text: str,
    *,
    exported_at: datetime | None = None,
) -> str:
    """Return a markdown export of ``highlights`` ordered by position.

    Each highlight is quoted under a heading naming the lines it spans in
    ``full_text`` and its colour, followed by its notes.
    """

    items = sorted(highlights, key=lambda highlight: highlight.from_pos)
    if not items:
        return EMPTY_EXPORT

    notes_by_highlight: dict[str, list[MarginNote]] = defaultdict(list)
    for note in margin_notes:
        notes_by_highlight[note.highlight_id].append(note)

    lines: list[str] = []
    if document.source is DocumentSource.FILE and document.file_path:
        lines.append(f"# Annotations: `{document.file_path}`")
    else:
        lines.append(f'# Annotations: "{document.display_title}"')
        if document.url:
            lines.append(f"_Source: {document.url}_")

    stamp = (exported_at or datetime.now()).strftime("%m/%d/%Y %H:%M")
    lines.append("")
    lines.append(f"_Exported from Quire on {stamp} ({len(items)} annotations)_")

    for highlight in items:
        lines.extend(["", "---", ""])
        span = _line_range(full_text, highlight.from_pos, highlight.to_pos)
        lines.append(f"### {span} -- {highlight.color.value} highlight")
        lines.append(_quote(highlight.text_content))
        notes = notes_by_highlight.get(highlight.id)
        if notes:
            lines.append("")
            lines.extend(f"**Note:** {note.content}" for note in notes)

    lines.append("")
    return "\n".join(lines)


def _line_number(text: str, offset: int) -> int:
    return text.count("\n", 0, max(0, min(offset, len(text)))) + 1


def _line_range(text: str, start: int, end: int) -> str:
    first = _line_number(text, start)
    last = _line_number(text, end)
    if first == last:
        return f"Line {first}"
    return f"Lines {first}-{last}"


def _quote(text: str) -> str:
    return "\n".join(f"> {line}" for line in text.split("\n"))
