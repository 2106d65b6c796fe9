"""Dataclasses describing documents, tabs and annotations."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from ..utils.file_io import count_words, title_from_path

__all__ = [
    "AnnotationState",
    "Document",
    "DocumentSource",
    "Highlight",
    "HighlightColor",
    "MarginNote",
    "PersistedTab",
    "Tab",
    "TabCache",
    "UNTITLED",
    "now_millis",
    "new_id",
]

UNTITLED = "Untitled"


def now_millis() -> int:
    """Return the current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


class DocumentSource(str, Enum):
    """Where a document's content lives."""

    FILE = "file"
    KEEP_LOCAL = "keep-local"


class HighlightColor(str, Enum):
    YELLOW = "yellow"
    GREEN = "green"
    BLUE = "blue"
    PINK = "pink"
    ORANGE = "orange"


class AnnotationState(Enum):
    """Lazy-load progress of a tab's highlights and margin notes."""

    NOT_LOADED = "not-loaded"
    LOADING = "loading"
    LOADED = "loaded"


@dataclass(slots=True)
class Document:
    """Durable metadata for a document opened in the reader.

    File documents carry ``file_path``; keep-local articles carry
    ``keep_local_id``. Exactly one of the two is set, as selected by
    ``source``.
    """

    id: str
    source: DocumentSource
    file_path: str | None = None
    keep_local_id: str | None = None
    title: str | None = None
    author: str | None = None
    url: str | None = None
    word_count: int = 0
    last_opened_at: int = field(default_factory=now_millis)
    created_at: int = field(default_factory=now_millis)

    def __post_init__(self) -> None:
        self.source = DocumentSource(self.source)
        if self.source is DocumentSource.FILE:
            if not self.file_path or self.keep_local_id is not None:
                raise ValueError("file documents require file_path and no keep_local_id")
        elif not self.keep_local_id or self.file_path is not None:
            raise ValueError("keep-local documents require keep_local_id and no file_path")

    @property
    def display_title(self) -> str:
        return self.title or UNTITLED

    @classmethod
    def for_file(cls, path: Path | str, content: str, *, existing: Document | None = None) -> Document:
        """Build the record for a file opened from disk.

        ``existing`` keeps the identity and creation time of a previously
        stored record for the same path.
        """

        file_path = str(path)
        now = now_millis()
        prior = existing if existing is not None and existing.file_path == file_path else None
        return cls(
            id=prior.id if prior is not None else new_id(),
            source=DocumentSource.FILE,
            file_path=file_path,
            title=title_from_path(file_path),
            word_count=count_words(content),
            last_opened_at=now,
            created_at=prior.created_at if prior is not None else now,
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source.value,
            "file_path": self.file_path,
            "keep_local_id": self.keep_local_id,
            "title": self.title,
            "author": self.author,
            "url": self.url,
            "word_count": self.word_count,
            "last_opened_at": self.last_opened_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Document:
        return cls(
            id=record["id"],
            source=DocumentSource(record["source"]),
            file_path=record["file_path"],
            keep_local_id=record["keep_local_id"],
            title=record["title"],
            author=record["author"],
            url=record["url"],
            word_count=int(record["word_count"] or 0),
            last_opened_at=int(record["last_opened_at"]),
            created_at=int(record["created_at"]),
        )


@dataclass(slots=True, frozen=True)
class Tab:
    """A slot in the tab strip. Replaced wholesale, never mutated in place."""

    id: str
    document_id: str | None
    title: str
    is_dirty: bool
    order: int
    created_at: int = field(default_factory=now_millis)

    @property
    def display_title(self) -> str:
        return self.title or UNTITLED


@dataclass(slots=True)
class PersistedTab:
    id: str
    document_id: str
    tab_order: int
    is_active: bool
    created_at: int


@dataclass(slots=True)
class Highlight:
    id: str
    document_id: str
    color: HighlightColor
    text_content: str
    from_pos: int
    to_pos: int
    prefix_context: str | None = None
    suffix_context: str | None = None
    created_at: int = field(default_factory=now_millis)
    updated_at: int = field(default_factory=now_millis)

    def __post_init__(self) -> None:
        self.color = HighlightColor(self.color)
        if self.from_pos > self.to_pos:
            raise ValueError(f"highlight range is inverted: {self.from_pos} > {self.to_pos}")


@dataclass(slots=True)
class MarginNote:
    id: str
    highlight_id: str
    content: str
    created_at: int = field(default_factory=now_millis)
    updated_at: int = field(default_factory=now_millis)


@dataclass(slots=True)
class TabCache:
    """Working-set projection of a tab's durable state."""

    document: Document | None = None
    content: str = ""
    file_path: str | None = None
    highlights: list[Highlight] = field(default_factory=list)
    margin_notes: list[MarginNote] = field(default_factory=list)
    annotation_state: AnnotationState = AnnotationState.NOT_LOADED
    scroll_position: float = 0.0
    saved_content: str = ""

    @property
    def annotations_loaded(self) -> bool:
        return self.annotation_state is AnnotationState.LOADED

    @property
    def has_save_target(self) -> bool:
        if self.file_path:
            return True
        document = self.document
        return document is not None and document.source is DocumentSource.KEEP_LOCAL

    def reset_annotations(self) -> None:
        self.highlights = []
        self.margin_notes = []
        self.annotation_state = AnnotationState.NOT_LOADED
