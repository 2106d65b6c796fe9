"""SQLite-backed storage for documents, open tabs and annotations."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from functools import partial
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Protocol, Sequence, TypeVar

from ..core.models import (
    Document,
    Highlight,
    HighlightColor,
    MarginNote,
    PersistedTab,
    now_millis,
)
from ..session.errors import PersistenceError
from ..utils.file_io import title_from_path

__all__ = ["PersistenceGateway", "SQLitePersistence"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        source TEXT NOT NULL CHECK (source IN ('file', 'keep-local')),
        file_path TEXT UNIQUE,
        keep_local_id TEXT UNIQUE,
        title TEXT,
        author TEXT,
        url TEXT,
        word_count INTEGER NOT NULL DEFAULT 0,
        last_opened_at INTEGER NOT NULL,
        created_at INTEGER NOT NULL,
        CHECK ((file_path IS NULL) != (keep_local_id IS NULL))
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_last_opened ON documents(last_opened_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS open_tabs (
        id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        tab_order INTEGER NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS highlights (
        id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        color TEXT NOT NULL,
        text_content TEXT NOT NULL,
        from_pos INTEGER NOT NULL,
        to_pos INTEGER NOT NULL,
        prefix_context TEXT,
        suffix_context TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_highlights_document ON highlights(document_id, from_pos)",
    """
    CREATE TABLE IF NOT EXISTS margin_notes (
        id TEXT PRIMARY KEY,
        highlight_id TEXT NOT NULL REFERENCES highlights(id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_margin_notes_highlight ON margin_notes(highlight_id)",
)


class PersistenceGateway(Protocol):
    """Durable store the session engine writes through."""

    async def upsert_document(self, document: Document) -> None: ...

    async def get_document(self, document_id: str) -> Document | None: ...

    async def get_document_by_path(self, file_path: str) -> Document | None: ...

    async def get_recent_documents(self, limit: int = 100) -> list[Document]: ...

    async def get_open_tabs(self) -> list[PersistedTab]: ...

    async def save_open_tabs(self, tabs: Sequence[PersistedTab]) -> None: ...

    async def create_highlight(self, highlight: Highlight) -> None: ...

    async def get_highlights(self, document_id: str) -> list[Highlight]: ...

    async def update_highlight_color(self, highlight_id: str, color: HighlightColor) -> None: ...

    async def update_highlight_range(self, highlight_id: str, from_pos: int, to_pos: int) -> None: ...

    async def delete_highlight(self, highlight_id: str) -> None: ...

    async def create_margin_note(self, note: MarginNote) -> None: ...

    async def get_margin_notes(self, document_id: str) -> list[MarginNote]: ...

    async def update_margin_note(self, note_id: str, content: str) -> None: ...

    async def delete_margin_note(self, note_id: str) -> None: ...

    async def rename_file(self, old_path: str, new_path: str) -> None: ...


class SQLitePersistence:
    """:class:`PersistenceGateway` over a single ``sqlite3`` connection.

    Every public coroutine runs its statement on the default executor; the
    connection itself is guarded by an ``RLock``. ``sqlite3.Error`` is
    reported as :class:`PersistenceError`.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._path = Path(db_path) if str(db_path) != ":memory:" else None
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()
        try:
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._create_schema()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to open database {db_path}: {exc}") from exc
        self._closed = False

    @property
    def path(self) -> Path | None:
        return self._path

    def _create_schema(self) -> None:
        with self._lock:
            with self._conn:
                for statement in _SCHEMA:
                    self._conn.execute(statement)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    async def upsert_document(self, document: Document) -> None:
        await self._run_blocking(self._upsert_document, document)

    async def get_document(self, document_id: str) -> Document | None:
        return await self._run_blocking(self._fetch_document, "id", document_id)

    async def get_document_by_path(self, file_path: str) -> Document | None:
        return await self._run_blocking(self._fetch_document, "file_path", file_path)

    async def get_recent_documents(self, limit: int = 100) -> list[Document]:
        return await self._run_blocking(self._recent_documents, limit)

    async def rename_file(self, old_path: str, new_path: str) -> None:
        await self._run_blocking(self._rename_file, old_path, new_path)

    # ------------------------------------------------------------------
    # Tabs
    # ------------------------------------------------------------------
    async def get_open_tabs(self) -> list[PersistedTab]:
        return await self._run_blocking(self._open_tabs)

    async def save_open_tabs(self, tabs: Sequence[PersistedTab]) -> None:
        await self._run_blocking(self._replace_open_tabs, list(tabs))

    # ------------------------------------------------------------------
    # Highlights and margin notes
    # ------------------------------------------------------------------
    async def create_highlight(self, highlight: Highlight) -> None:
        await self._run_blocking(self._insert_highlight, highlight)

    async def get_highlights(self, document_id: str) -> list[Highlight]:
        return await self._run_blocking(self._highlights_for, document_id)

    async def update_highlight_color(self, highlight_id: str, color: HighlightColor) -> None:
        await self._run_blocking(
            self._execute,
            "UPDATE highlights SET color = ?, updated_at = ? WHERE id = ?",
            (HighlightColor(color).value, now_millis(), highlight_id),
        )

    async def update_highlight_range(self, highlight_id: str, from_pos: int, to_pos: int) -> None:
        await self._run_blocking(
            self._execute,
            "UPDATE highlights SET from_pos = ?, to_pos = ?, updated_at = ? WHERE id = ?",
            (from_pos, to_pos, now_millis(), highlight_id),
        )

    async def delete_highlight(self, highlight_id: str) -> None:
        await self._run_blocking(self._execute, "DELETE FROM highlights WHERE id = ?", (highlight_id,))

    async def create_margin_note(self, note: MarginNote) -> None:
        await self._run_blocking(
            self._execute,
            """
            INSERT INTO margin_notes (id, highlight_id, content, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (note.id, note.highlight_id, note.content, note.created_at, note.updated_at),
        )

    async def get_margin_notes(self, document_id: str) -> list[MarginNote]:
        return await self._run_blocking(self._notes_for, document_id)

    async def update_margin_note(self, note_id: str, content: str) -> None:
        await self._run_blocking(
            self._execute,
            "UPDATE margin_notes SET content = ?, updated_at = ? WHERE id = ?",
            (content, now_millis(), note_id),
        )

    async def delete_margin_note(self, note_id: str) -> None:
        await self._run_blocking(self._execute, "DELETE FROM margin_notes WHERE id = ?", (note_id,))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._conn.close()
            except sqlite3.Error:  # pragma: no cover - close failures are not actionable
                LOGGER.debug("Failed to close database connection", exc_info=True)

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------
    def _execute(self, sql: str, params: Sequence[Any]) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(sql, params)

    def _upsert_document(self, document: Document) -> None:
        record = document.to_record()
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO documents (
                        id, source, file_path, keep_local_id, title, author, url,
                        word_count, last_opened_at, created_at
                    ) VALUES (
                        :id, :source, :file_path, :keep_local_id, :title, :author, :url,
                        :word_count, :last_opened_at, :created_at
                    )
                    ON CONFLICT(id) DO UPDATE SET
                        source=excluded.source,
                        file_path=excluded.file_path,
                        keep_local_id=excluded.keep_local_id,
                        title=excluded.title,
                        author=excluded.author,
                        url=excluded.url,
                        word_count=excluded.word_count,
                        last_opened_at=excluded.last_opened_at
                    """,
                    record,
                )

    def _fetch_document(self, column: str, value: str) -> Document | None:
        with self._lock:
            row = self._conn.execute(f"SELECT * FROM documents WHERE {column} = ?", (value,)).fetchone()
        return Document.from_record(row) if row is not None else None

    def _recent_documents(self, limit: int) -> list[Document]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM documents ORDER BY last_opened_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [Document.from_record(row) for row in rows]

    def _rename_file(self, old_path: str, new_path: str) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "UPDATE documents SET file_path = ?, title = ? WHERE file_path = ?",
                    (new_path, title_from_path(new_path), old_path),
                )

    def _open_tabs(self) -> list[PersistedTab]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM open_tabs ORDER BY tab_order").fetchall()
        return [
            PersistedTab(
                id=row["id"],
                document_id=row["document_id"],
                tab_order=row["tab_order"],
                is_active=bool(row["is_active"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def _replace_open_tabs(self, tabs: list[PersistedTab]) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM open_tabs")
                self._conn.executemany(
                    """
                    INSERT INTO open_tabs (id, document_id, tab_order, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (tab.id, tab.document_id, tab.tab_order, 1 if tab.is_active else 0, tab.created_at)
                        for tab in tabs
                    ],
                )

    def _insert_highlight(self, highlight: Highlight) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO highlights (
                        id, document_id, color, text_content, from_pos, to_pos,
                        prefix_context, suffix_context, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        highlight.id,
                        highlight.document_id,
                        highlight.color.value,
                        highlight.text_content,
                        highlight.from_pos,
                        highlight.to_pos,
                        highlight.prefix_context,
                        highlight.suffix_context,
                        highlight.created_at,
                        highlight.updated_at,
                    ),
                )

    def _highlights_for(self, document_id: str) -> list[Highlight]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM highlights WHERE document_id = ? ORDER BY from_pos", (document_id,)
            ).fetchall()
        return [_row_to_highlight(row) for row in rows]

    def _notes_for(self, document_id: str) -> list[MarginNote]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT margin_notes.* FROM margin_notes
                JOIN highlights ON highlights.id = margin_notes.highlight_id
                WHERE highlights.document_id = ?
                ORDER BY margin_notes.created_at
                """,
                (document_id,),
            ).fetchall()
        return [
            MarginNote(
                id=row["id"],
                highlight_id=row["highlight_id"],
                content=row["content"],
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    async def _run_blocking(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args))
        except sqlite3.Error as exc:
            LOGGER.warning("Database operation %s failed: %s", func.__name__, exc)
            raise PersistenceError(str(exc)) from exc


def _row_to_highlight(row: sqlite3.Row) -> Highlight:
    return Highlight(
        id=row["id"],
        document_id=row["document_id"],
        color=HighlightColor(row["color"]),
        text_content=row["text_content"],
        from_pos=row["from_pos"],
        to_pos=row["to_pos"],
        prefix_context=row["prefix_context"],
        suffix_context=row["suffix_context"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
