"""Highlights and margin notes attached to the documents shown in tabs."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import TYPE_CHECKING

from ..core.anchoring import AnchorConfidence, TextAnchor, create_anchor, resolve_anchor
from ..core.export import format_annotations_markdown
from ..core.models import (
    AnnotationState,
    Highlight,
    HighlightColor,
    MarginNote,
    TabCache,
    new_id,
    now_millis,
)
from .errors import SessionError, UnknownTabError
from .staged_action import StagedAction

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..services.persistence import PersistenceGateway
    from .engine import DocumentSession

__all__ = ["AnnotationService", "DELETED_HIGHLIGHT_MESSAGE"]

LOGGER = logging.getLogger(__name__)

DELETED_HIGHLIGHT_MESSAGE = "Deleted highlight"


class AnnotationService:
    """Loads and edits the annotations held in each tab's cache.

    Loading is lazy and tri-state (not loaded, loading, loaded). Concurrent
    requests for the same tab share one in-flight fetch, and a fetch that
    finishes after its tab was invalidated or closed is discarded.

    Operations default to the active tab; pass ``tab_id`` to target another.
    """

    def __init__(self, session: DocumentSession, persistence: PersistenceGateway) -> None:
        self._session = session
        self._persistence = persistence
        self._loads: dict[str, asyncio.Task[None]] = {}
        self._generations: dict[str, int] = {}
        self._pending_deletions: set[str] = set()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    async def ensure_loaded(self, tab_id: str) -> None:
        cache = self._session.get_cached_tab(tab_id)
        if cache is None or cache.document is None:
            return
        if cache.annotation_state is AnnotationState.LOADED:
            return

        task = self._loads.get(tab_id)
        if task is None:
            cache.annotation_state = AnnotationState.LOADING
            generation = self._generations.get(tab_id, 0)
            task = asyncio.ensure_future(self._load(tab_id, cache, cache.document.id, generation))
            self._loads[tab_id] = task
            task.add_done_callback(partial(self._forget_load, tab_id))
        await asyncio.shield(task)

    def invalidate(self, tab_id: str) -> None:
        """Drop the tab's annotations so the next activation fetches them again."""

        self._generations[tab_id] = self._generations.get(tab_id, 0) + 1
        self._loads.pop(tab_id, None)
        cache = self._session.get_cached_tab(tab_id)
        if cache is not None:
            cache.reset_annotations()

    def forget(self, tab_id: str) -> None:
        self.invalidate(tab_id)
        self._generations.pop(tab_id, None)

    async def close(self) -> None:
        tasks = list(self._loads.values())
        self._loads.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _load(self, tab_id: str, cache: TabCache, document_id: str, generation: int) -> None:
        try:
            highlights = await self._persistence.get_highlights(document_id)
            notes = await self._persistence.get_margin_notes(document_id)
        except BaseException:
            if self._is_current(tab_id, cache, generation):
                cache.annotation_state = AnnotationState.NOT_LOADED
            raise

        if not self._is_current(tab_id, cache, generation):
            LOGGER.debug("Discarding stale annotation load for tab %s", tab_id)
            return
        pending = self._pending_deletions
        cache.highlights = [item for item in highlights if item.id not in pending]
        cache.margin_notes = [note for note in notes if note.highlight_id not in pending]
        cache.annotation_state = AnnotationState.LOADED
        LOGGER.debug(
            "Loaded %d highlight(s) and %d note(s) for tab %s",
            len(cache.highlights),
            len(cache.margin_notes),
            tab_id,
        )

    def _is_current(self, tab_id: str, cache: TabCache, generation: int) -> bool:
        return (
            self._session.get_cached_tab(tab_id) is cache
            and self._generations.get(tab_id, 0) == generation
        )

    def _forget_load(self, tab_id: str, task: asyncio.Task[None]) -> None:
        if self._loads.get(tab_id) is task:
            del self._loads[tab_id]

    # ------------------------------------------------------------------
    # Highlights
    # ------------------------------------------------------------------
    async def create_highlight(
        self,
        from_pos: int,
        to_pos: int,
        color: HighlightColor | str = HighlightColor.YELLOW,
        *,
        tab_id: str | None = None,
    ) -> Highlight:
        tab_id, cache = self._resolve(tab_id)
        await self.ensure_loaded(tab_id)
        document = cache.document
        if document is None:
            raise SessionError("Tab has no document to annotate")
        if not 0 <= from_pos <= to_pos <= len(cache.content):
            raise ValueError(f"Highlight range {from_pos}..{to_pos} is outside the document")

        anchor = create_anchor(cache.content, from_pos, to_pos)
        now = now_millis()
        highlight = Highlight(
            id=new_id(),
            document_id=document.id,
            color=HighlightColor(color),
            text_content=anchor.text,
            from_pos=from_pos,
            to_pos=to_pos,
            prefix_context=anchor.prefix,
            suffix_context=anchor.suffix,
            created_at=now,
            updated_at=now,
        )
        await self._persistence.create_highlight(highlight)
        if self._session.get_cached_tab(tab_id) is cache:
            cache.highlights = sorted([*cache.highlights, highlight], key=lambda item: item.from_pos)
        return highlight

    async def change_highlight_color(
        self, highlight_id: str, color: HighlightColor | str, *, tab_id: str | None = None
    ) -> Highlight:
        _, cache = self._resolve(tab_id)
        highlight = _find_highlight(cache, highlight_id)
        highlight.color = HighlightColor(color)
        highlight.updated_at = now_millis()
        await self._persistence.update_highlight_color(highlight_id, highlight.color)
        return highlight

    def delete_highlight(self, highlight_id: str, *, tab_id: str | None = None) -> StagedAction:
        """Remove the highlight now and stage its durable deletion on the undo slot."""

        tab_id, cache = self._resolve(tab_id)
        highlight = _find_highlight(cache, highlight_id)
        notes = [note for note in cache.margin_notes if note.highlight_id == highlight_id]
        cache.highlights = [item for item in cache.highlights if item.id != highlight_id]
        cache.margin_notes = [note for note in cache.margin_notes if note.highlight_id != highlight_id]
        self._pending_deletions.add(highlight_id)

        async def commit() -> None:
            self._pending_deletions.discard(highlight_id)
            await self._persistence.delete_highlight(highlight_id)
            LOGGER.debug("Deleted highlight %s", highlight_id)

        def undo() -> None:
            self._pending_deletions.discard(highlight_id)
            live = self._session.get_cached_tab(tab_id)
            if live is None or live.document is None or live.document.id != highlight.document_id:
                return
            if any(item.id == highlight_id for item in live.highlights):
                return
            live.highlights = sorted([*live.highlights, highlight], key=lambda item: item.from_pos)
            live.margin_notes = [*live.margin_notes, *notes]
            LOGGER.debug("Restored highlight %s", highlight_id)

        action = StagedAction(message=DELETED_HIGHLIGHT_MESSAGE, on_commit=commit, on_undo=undo)
        return self._session.undo_slot.stage(action)

    async def reanchor_highlights(self, *, tab_id: str | None = None) -> dict[str, AnchorConfidence]:
        """Move highlights to where their text now lives in the tab's content."""

        tab_id, cache = self._resolve(tab_id)
        results: dict[str, AnchorConfidence] = {}
        moved: list[Highlight] = []
        for highlight in cache.highlights:
            anchor = TextAnchor(
                text=highlight.text_content,
                prefix=highlight.prefix_context or "",
                suffix=highlight.suffix_context or "",
                start=highlight.from_pos,
                end=highlight.to_pos,
            )
            result = resolve_anchor(cache.content, anchor)
            results[highlight.id] = result.confidence
            if result.confidence is AnchorConfidence.ORPHANED:
                LOGGER.debug("Highlight %s is orphaned", highlight.id)
                continue
            if (result.start, result.end) != (highlight.from_pos, highlight.to_pos):
                highlight.from_pos = result.start
                highlight.to_pos = result.end
                moved.append(highlight)
        if moved:
            cache.highlights = sorted(cache.highlights, key=lambda item: item.from_pos)
        for highlight in moved:
            await self._persistence.update_highlight_range(highlight.id, highlight.from_pos, highlight.to_pos)
        return results

    # ------------------------------------------------------------------
    # Margin notes
    # ------------------------------------------------------------------
    async def create_margin_note(self, highlight_id: str, content: str, *, tab_id: str | None = None) -> MarginNote:
        tab_id, cache = self._resolve(tab_id)
        _find_highlight(cache, highlight_id)
        now = now_millis()
        note = MarginNote(id=new_id(), highlight_id=highlight_id, content=content, created_at=now, updated_at=now)
        await self._persistence.create_margin_note(note)
        if self._session.get_cached_tab(tab_id) is cache:
            cache.margin_notes = [*cache.margin_notes, note]
        return note

    async def update_margin_note(self, note_id: str, content: str, *, tab_id: str | None = None) -> MarginNote:
        _, cache = self._resolve(tab_id)
        note = _find_note(cache, note_id)
        note.content = content
        note.updated_at = now_millis()
        await self._persistence.update_margin_note(note_id, content)
        return note

    async def delete_margin_note(self, note_id: str, *, tab_id: str | None = None) -> None:
        _, cache = self._resolve(tab_id)
        _find_note(cache, note_id)
        cache.margin_notes = [note for note in cache.margin_notes if note.id != note_id]
        await self._persistence.delete_margin_note(note_id)

    def notes_for_highlight(self, highlight_id: str, *, tab_id: str | None = None) -> list[MarginNote]:
        _, cache = self._resolve(tab_id)
        return [note for note in cache.margin_notes if note.highlight_id == highlight_id]

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------
    async def export_markdown(self, *, tab_id: str | None = None) -> str:
        """Render the tab's highlights and notes as markdown, loading them first if needed."""

        tab_id, cache = self._resolve(tab_id)
        if cache.document is None:
            raise SessionError(f"Tab {tab_id} has no document to export")
        await self.ensure_loaded(tab_id)
        live = self._session.get_cached_tab(tab_id) or cache
        return format_annotations_markdown(
            cache.document,
            live.highlights,
            live.margin_notes,
            live.content,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _resolve(self, tab_id: str | None) -> tuple[str, TabCache]:
        target = tab_id or self._session.active_tab_id
        if target is None:
            raise SessionError("No active tab")
        cache = self._session.get_cached_tab(target)
        if cache is None:
            raise UnknownTabError(target)
        return target, cache


def _find_highlight(cache: TabCache, highlight_id: str) -> Highlight:
    for highlight in cache.highlights:
        if highlight.id == highlight_id:
            return highlight
    raise KeyError(highlight_id)


def _find_note(cache: TabCache, note_id: str) -> MarginNote:
    for note in cache.margin_notes:
        if note.id == note_id:
            return note
    raise KeyError(note_id)
