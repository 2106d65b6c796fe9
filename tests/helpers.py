"""Shared test doubles for the session engine and its gateways.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Sequence

from quire.core.models import Document, Highlight, HighlightColor, MarginNote, PersistedTab
from quire.services.file_system import FileChange
from quire.session.errors import PersistenceError
from quire.utils.file_io import normalize_path, title_from_path


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@dataclass
class FakeTimer:
    due: float
    callback: Callable[[], None]
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """``call_later`` implementation driven by :meth:`advance` (seconds)."""

    def __init__(self) -> None:
        self.now = 0.0
        self.timers: list[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(due=self.now + delay, callback=callback)
        self.timers.append(timer)
        return timer

    def advance(self, seconds: float) -> None:
        self.now += seconds
        while True:
            due = [t for t in self.timers if not t.cancelled and not t.fired and t.due <= self.now]
            if not due:
                return
            timer = min(due, key=lambda t: t.due)
            timer.fired = True
            timer.callback()

    @property
    def active(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]


class MemoryFileSystem:
    """In-memory file system gateway with hooks to delay or fail writes."""

    def __init__(self, files: dict[str, str] | None = None) -> None:
        self.files: dict[str, str] = {normalize_path(k): v for k, v in (files or {}).items()}
        self.writes: list[tuple[str, str]] = []
        self.write_calls = 0
        self.fail_with: BaseException | None = None
        self.write_gate: asyncio.Event | None = None
        self.write_gates: list[asyncio.Event] = []
        self.max_concurrent_writes = 0
        self._in_flight: dict[str, int] = {}
        self.unreadable: set[str] = set()
        self.watched: set[str] = set()
        self._queue: asyncio.Queue[FileChange | None] = asyncio.Queue()

    def put(self, path: str, content: str) -> None:
        self.files[normalize_path(path)] = content

    def get(self, path: str) -> str | None:
        return self.files.get(normalize_path(path))

    async def read_file(self, path: str) -> str:
        await asyncio.sleep(0)
        key = normalize_path(path)
        if key in self.unreadable:
            raise PermissionError(f"Permission denied: {path}")
        if key not in self.files:
            raise FileNotFoundError(path)
        return self.files[key]

    async def write_file(self, path: str, content: str) -> None:
        """Write ``content``; each call waits on the next of ``write_gates``, else on ``write_gate``."""

        self.write_calls += 1
        key = normalize_path(path)
        self._in_flight[key] = self._in_flight.get(key, 0) + 1
        self.max_concurrent_writes = max(self.max_concurrent_writes, self._in_flight[key])
        try:
            gate = self.write_gates.pop(0) if self.write_gates else self.write_gate
            if gate is not None:
                await gate.wait()
            else:
                await asyncio.sleep(0)
            if self.fail_with is not None:
                raise self.fail_with
            self.files[key] = content
            self.writes.append((path, content))
        finally:
            self._in_flight[key] -= 1

    async def rename_file(self, old_path: str, new_name: str) -> str:
        await asyncio.sleep(0)
        target = str(Path(old_path).with_name(new_name))
        self.files[normalize_path(target)] = self.files.pop(normalize_path(old_path))
        return target

    def watch(self, path: str) -> str:
        key = normalize_path(path)
        self.watched.add(key)
        return key

    def unwatch(self, path: str) -> None:
        self.watched.discard(normalize_path(path))

    def emit(self, path: str, timestamp: int = 0) -> None:
        self._queue.put_nowait(FileChange(path=path, timestamp=timestamp))

    def finish(self) -> None:
        self._queue.put_nowait(None)

    def stop(self) -> None:
        self.finish()

    def changes(self) -> AsyncIterator[FileChange]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[FileChange]:
        while True:
            change = await self._queue.get()
            if change is None:
                return
            yield change


@dataclass
class MemoryPersistence:
    """Dict-backed persistence gateway recording every call."""

    documents: dict[str, Document] = field(default_factory=dict)
    open_tabs: list[PersistedTab] = field(default_factory=list)
    highlights: dict[str, Highlight] = field(default_factory=dict)
    notes: dict[str, MarginNote] = field(default_factory=dict)
    calls: list[tuple[str, Any]] = field(default_factory=list)
    failing: set[str] = field(default_factory=set)
    tabs_gate: asyncio.Event | None = None
    highlights_gate: asyncio.Event | None = None
    highlight_fetches: int = 0
    saved_layouts: list[list[PersistedTab]] = field(default_factory=list)

    def _record(self, name: str, payload: Any = None) -> None:
        self.calls.append((name, payload))
        if name in self.failing:
            raise PersistenceError(f"{name} failed")

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def upsert_document(self, document: Document) -> None:
        await asyncio.sleep(0)
        self._record("upsert_document", document)
        self.documents[document.id] = document

    async def get_document(self, document_id: str) -> Document | None:
        self._record("get_document", document_id)
        return self.documents.get(document_id)

    async def get_document_by_path(self, file_path: str) -> Document | None:
        self._record("get_document_by_path", file_path)
        for document in self.documents.values():
            if document.file_path == file_path:
                return document
        return None

    async def get_recent_documents(self, limit: int = 100) -> list[Document]:
        self._record("get_recent_documents", limit)
        ordered = sorted(self.documents.values(), key=lambda d: d.last_opened_at, reverse=True)
        return ordered[:limit]

    async def get_open_tabs(self) -> list[PersistedTab]:
        self._record("get_open_tabs")
        return sorted(self.open_tabs, key=lambda t: t.tab_order)

    async def save_open_tabs(self, tabs: Sequence[PersistedTab]) -> None:
        snapshot = list(tabs)
        if self.tabs_gate is not None:
            await self.tabs_gate.wait()
        else:
            await asyncio.sleep(0)
        self._record("save_open_tabs", snapshot)
        self.open_tabs = snapshot
        self.saved_layouts.append(snapshot)

    async def create_highlight(self, highlight: Highlight) -> None:
        self._record("create_highlight", highlight)
        self.highlights[highlight.id] = highlight

    async def get_highlights(self, document_id: str) -> list[Highlight]:
        self.highlight_fetches += 1
        if self.highlights_gate is not None:
            await self.highlights_gate.wait()
        else:
            await asyncio.sleep(0)
        self._record("get_highlights", document_id)
        found = [h for h in self.highlights.values() if h.document_id == document_id]
        return sorted(found, key=lambda h: h.from_pos)

    async def update_highlight_color(self, highlight_id: str, color: HighlightColor) -> None:
        self._record("update_highlight_color", (highlight_id, color))
        self.highlights[highlight_id].color = HighlightColor(color)

    async def update_highlight_range(self, highlight_id: str, from_pos: int, to_pos: int) -> None:
        self._record("update_highlight_range", (highlight_id, from_pos, to_pos))

    async def delete_highlight(self, highlight_id: str) -> None:
        await asyncio.sleep(0)
        self._record("delete_highlight", highlight_id)
        self.highlights.pop(highlight_id, None)
        for note_id in [n.id for n in self.notes.values() if n.highlight_id == highlight_id]:
            del self.notes[note_id]

    async def create_margin_note(self, note: MarginNote) -> None:
        self._record("create_margin_note", note)
        self.notes[note.id] = note

    async def get_margin_notes(self, document_id: str) -> list[MarginNote]:
        self._record("get_margin_notes", document_id)
        highlight_ids = {h.id for h in self.highlights.values() if h.document_id == document_id}
        return [n for n in self.notes.values() if n.highlight_id in highlight_ids]

    async def update_margin_note(self, note_id: str, content: str) -> None:
        self._record("update_margin_note", (note_id, content))

    async def delete_margin_note(self, note_id: str) -> None:
        self._record("delete_margin_note", note_id)
        self.notes.pop(note_id, None)

    async def rename_file(self, old_path: str, new_path: str) -> None:
        self._record("rename_file", (old_path, new_path))
        for document in self.documents.values():
            if document.file_path == old_path:
                document.file_path = new_path
                document.title = title_from_path(new_path)


class EventRecorder:
    """Collects published events; keep a reference so the bus's weak refs stay alive."""

    def __init__(self) -> None:
        self.events: list[Any] = []

    def __call__(self, event: Any) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> list[Any]:
        return [event for event in self.events if isinstance(event, event_type)]
