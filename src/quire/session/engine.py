"""Document session: open tabs, their cached state, saves and external changes."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Callable

from ..core.markdown import check_shrink, has_meaningful_diff

from ..core.models import (
    UNTITLED,
    Document,
    DocumentSource,
    PersistedTab,
    Tab,
    TabCache,
    new_id,
    now_millis,
)
from ..services.settings import SessionConfig
from ..utils.file_io import count_words, normalize_path, title_from_path
from .annotations import AnnotationService
from .errors import (
    KeepLocalError,
    NothingToSaveError,
    PersistenceError,
    RenameError,
    SaveError,
    SessionError,
    SuspiciousShrinkError,
    UnknownTabError,
)
from .events import (
    ActiveTabChanged,
    DocumentSaved,
    EventBus,
    ExternalChangeApplied,
    ExternalChangeSuppressed,
    SaveFailed,
    TabClosed,
    TabOpened,
    TabsReordered,
    WorkspaceRestored,
)
from .self_save import SelfSaveTracker
from .staged_action import Scheduler, TimerHandle, error_slot, undo_slot
from .tab_cache import TabCacheStore

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from ..services.file_system import FileChange, FileSystemGateway
    from ..services.keep_local import KeepLocalClient
    from ..services.persistence import PersistenceGateway

__all__ = ["DocumentSession"]

LOGGER = logging.getLogger(__name__)


class DocumentSession:
    """Owns the open tabs and keeps them in sync with disk and the store.

    All state lives on this object and is mutated from the event loop
    thread only. Every coroutine finishes its in-memory mutation before its
    first ``await`` and re-checks the tab/cache it captured afterwards, so a
    tab closed mid-operation is never resurrected.
    """

    def __init__(
        self,
        *,
        file_system: FileSystemGateway,
        persistence: PersistenceGateway,
        bus: EventBus | None = None,
        config: SessionConfig | None = None,
        keep_local: KeepLocalClient | None = None,
        clock: Callable[[], int] = now_millis,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.config = config or SessionConfig()
        self.bus = bus or EventBus()
        self._fs = file_system
        self._persistence = persistence
        self._keep_local = keep_local
        self._clock = clock
        self.tracker = SelfSaveTracker(window_ms=self.config.suppression_window_ms, clock=clock)
        self.cache = TabCacheStore()
        self.undo_slot = undo_slot(duration_ms=self.config.undo_duration_ms, scheduler=scheduler, bus=self.bus)
        self.error_slot = error_slot(duration_ms=self.config.error_duration_ms, scheduler=scheduler, bus=self.bus)
        self.annotations = AnnotationService(self, persistence)
        self._tabs: tuple[Tab, ...] = ()
        self._active_tab_id: str | None = None
        self._pending_close_tab_id: str | None = None
        self._known_documents: dict[str, Document] = {}
        self._scheduler = scheduler
        self._save_locks: dict[str, asyncio.Lock] = {}
        self._save_lock_users: dict[str, int] = {}
        self._autosave_timers: dict[str, TimerHandle] = {}
        self._autosave_tasks: set[asyncio.Task[None]] = set()
        self._persist_lock = asyncio.Lock()
        self._layout_generation = 0
        self._persisted_generation = 0
        self._watch_task: asyncio.Task[None] | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, *, watch: bool = True) -> None:
        """Begin consuming change notifications from the file system gateway."""

        if self._closed:
            raise SessionError("Session is closed")
        if watch and self._watch_task is None:
            self._watch_task = asyncio.get_running_loop().create_task(
                self.consume_changes(self._fs.changes())
            )
            self._watch_task.add_done_callback(self._on_watch_done)
        LOGGER.debug("Session started (watch=%s)", watch)

    def _on_watch_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("File watching stopped after an error", exc_info=exc)

    async def close(self) -> None:
        """Commit pending undo actions, stop watching and release background tasks."""

        if self._closed:
            return
        self._closed = True
        for timer in self._autosave_timers.values():
            timer.cancel()
        self._autosave_timers.clear()
        if self._autosave_tasks:
            await asyncio.gather(*list(self._autosave_tasks), return_exceptions=True)
        self.undo_slot.flush()
        self.error_slot.flush()
        await self.undo_slot.drain()
        stop = getattr(self._fs, "stop", None)
        if callable(stop):
            stop()
        task, self._watch_task = self._watch_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.annotations.close()
        self.tracker.clear()
        LOGGER.debug("Session closed")

    # ------------------------------------------------------------------
    # Read-only projections
    # ------------------------------------------------------------------
    @property
    def tabs(self) -> tuple[Tab, ...]:
        return tuple(sorted(self._tabs, key=lambda tab: tab.order))

    @property
    def active_tab_id(self) -> str | None:
        return self._active_tab_id

    @property
    def active_tab(self) -> Tab | None:
        if self._active_tab_id is None:
            return None
        return self._tab_or_none(self._active_tab_id)

    @property
    def pending_close_tab_id(self) -> str | None:
        return self._pending_close_tab_id

    def get_cached_tab(self, tab_id: str) -> TabCache | None:
        return self.cache.get(tab_id)

    def is_self_save(self, path: str) -> bool:
        return self.tracker.is_within_window(path)

    # ------------------------------------------------------------------
    # Cache restore and saves
    # ------------------------------------------------------------------
    def restore_from_cache(
        self,
        document: Document | None,
        content: str,
        file_path: str | None,
        is_dirty: bool,
    ) -> Tab:
        """Install ``document``/``content`` into the active tab without any I/O."""

        title = _title_for(document, file_path)
        tab = self.active_tab
        previous = self.cache.get(tab.id) if tab is not None else None
        if tab is None:
            tab = Tab(
                id=new_id(),
                document_id=document.id if document is not None else None,
                title=title,
                is_dirty=is_dirty,
                order=self._next_order(),
                created_at=self._clock(),
            )
            self._tabs = self._tabs + (tab,)
            self._active_tab_id = tab.id
            self.bus.publish(TabOpened(tab_id=tab.id, document_id=tab.document_id))
            self.bus.publish(ActiveTabChanged(tab_id=tab.id, document_id=tab.document_id))
        else:
            tab = replace(
                tab,
                document_id=document.id if document is not None else None,
                title=title,
                is_dirty=is_dirty,
            )
            self._replace_tab(tab)

        if is_dirty:
            # The on-disk content is unknown; keep the previous baseline for the same file.
            same_target = previous is not None and previous.file_path == file_path
            saved_content = previous.saved_content if same_target and previous is not None else ""
        else:
            saved_content = content
        self.cache.set(
            tab.id,
            TabCache(document=document, content=content, file_path=file_path, saved_content=saved_content),
        )
        if document is not None:
            self._known_documents[document.id] = document
        self.annotations.invalidate(tab.id)
        LOGGER.debug("Restored tab %s from cache (dirty=%s)", tab.id, is_dirty)
        return tab

    async def save_current_file(self, *, force: bool = False) -> bool:
        """Write the active tab's content to its target.

        Returns ``True`` when content was written and ``False`` when the tab
        was already clean. Raises :class:`NothingToSaveError` without an
        active tab or save target and :class:`SaveError` when the write fails.
        A file save that would remove most of the file raises
        :class:`SuspiciousShrinkError` unless ``force`` is set.
        """

        tab = self.active_tab
        if tab is None:
            raise NothingToSaveError("No active tab")
        cache = self.cache.get(tab.id)
        if cache is None or not cache.has_save_target:
            raise NothingToSaveError(f"Tab {tab.display_title} has no save target")
        return await self._save_tab(tab, cache, force=force)

    async def _save_tab(self, tab: Tab, cache: TabCache, *, force: bool = False) -> bool:
        tab_id = tab.id
        snapshot = cache.content
        file_path = cache.file_path
        if not tab.is_dirty:
            LOGGER.debug("Tab %s is clean; nothing to save", tab_id)
            return False

        async with self._save_lock(_save_key(tab_id, cache)):
            if cache.saved_content == snapshot:
                # A queued save whose content the previous save already wrote.
                LOGGER.debug("Tab %s already saved this content", tab_id)
                if cache.content == snapshot and self.cache.get(tab_id) is cache:
                    self._set_dirty(tab_id, False)
                return False
            if file_path:
                if not force:
                    self._guard_shrink(tab_id, cache, file_path, snapshot)
                await self._write_file(tab, cache, file_path, snapshot)
            else:
                await self._store_keep_local(tab, cache, snapshot)
        return True

    @asynccontextmanager
    async def _save_lock(self, key: str) -> AsyncIterator[None]:
        """Serialize saves to one target, whichever tab issues them."""

        lock = self._save_locks.get(key)
        if lock is None:
            lock = self._save_locks[key] = asyncio.Lock()
        self._save_lock_users[key] = self._save_lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._save_lock_users[key] - 1
            if remaining:
                self._save_lock_users[key] = remaining
            else:
                # No holder and no waiters left.
                del self._save_lock_users[key]
                del self._save_locks[key]

    def _guard_shrink(self, tab_id: str, cache: TabCache, file_path: str, snapshot: str) -> None:
        check = check_shrink(cache.saved_content, snapshot)
        if not check.suspicious:
            return
        error = SuspiciousShrinkError(Path(file_path).name, check.removed_percent)
        LOGGER.warning("Refusing to save %s: %d%% of the content would be removed", file_path, check.removed_percent)
        self._report_save_failure(tab_id, str(error))
        raise error

    async def _write_file(self, tab: Tab, cache: TabCache, file_path: str, snapshot: str) -> None:
        name = Path(file_path).name
        try:
            await self._fs.write_file(file_path, snapshot)
        except Exception as exc:
            error = SaveError(name, _reason(exc))
            LOGGER.warning("%s", error)
            self._report_save_failure(tab.id, str(error))
            raise error from exc

        self.tracker.record(file_path)
        if self.cache.get(tab.id) is not cache:
            LOGGER.debug("Tab %s closed while saving %s; result discarded", tab.id, file_path)
            return
        self._mark_saved(tab.id, cache, snapshot)
        LOGGER.info("Saved %s", file_path)
        self.bus.publish(DocumentSaved(tab_id=tab.id, document_id=tab.document_id, path=file_path))

        document = cache.document
        if document is not None:
            updated = replace(document, word_count=count_words(snapshot), last_opened_at=self._clock())
            cache.document = updated
            self._known_documents[updated.id] = updated
            await self._persistence.upsert_document(updated)

    async def _store_keep_local(self, tab: Tab, cache: TabCache, snapshot: str) -> None:
        document = cache.document
        if document is None or document.source is not DocumentSource.KEEP_LOCAL:
            raise NothingToSaveError(f"Tab {tab.display_title} has no save target")
        updated = replace(document, word_count=count_words(snapshot), last_opened_at=self._clock())
        try:
            await self._persistence.upsert_document(updated)
        except PersistenceError as exc:
            error = SaveError(document.display_title, _reason(exc))
            LOGGER.warning("%s", error)
            self._report_save_failure(tab.id, str(error))
            raise error from exc

        if self.cache.get(tab.id) is not cache:
            return
        cache.document = updated
        self._known_documents[updated.id] = updated
        self._mark_saved(tab.id, cache, snapshot)
        self.bus.publish(DocumentSaved(tab_id=tab.id, document_id=updated.id, path=None))

    def _mark_saved(self, tab_id: str, cache: TabCache, snapshot: str) -> None:
        cache.saved_content = snapshot
        # Edits made while the write was in flight keep the tab dirty.
        if not has_meaningful_diff(cache.content, snapshot):
            self._set_dirty(tab_id, False)

    def _report_save_failure(self, tab_id: str, message: str) -> None:
        self.error_slot.notify_error(message)
        self.bus.publish(SaveFailed(tab_id=tab_id, message=message))

    # ------------------------------------------------------------------
    # Tab lifecycle
    # ------------------------------------------------------------------
    async def open_tab(self, document: Document, content: str, file_path: str | None) -> Tab:
        """Open ``document`` in a new tab, or switch to the tab already showing it."""

        existing = self._tab_for_document(document.id)
        if existing is not None:
            return await self._refresh_existing(existing, document, content, file_path)

        tab = Tab(
            id=new_id(),
            document_id=document.id,
            title=_title_for(document, file_path),
            is_dirty=False,
            order=self._next_order(),
            created_at=self._clock(),
        )
        self.cache.set(tab.id, _fresh_cache(document, content, file_path))
        self._known_documents[document.id] = document
        self._tabs = self._tabs + (tab,)
        self._active_tab_id = tab.id
        self._watch_path(file_path)
        self.bus.publish(TabOpened(tab_id=tab.id, document_id=document.id))
        self.bus.publish(ActiveTabChanged(tab_id=tab.id, document_id=document.id))
        LOGGER.debug("Opened tab %s for document %s at order %d", tab.id, document.id, tab.order)

        await self._persistence.upsert_document(document)
        await self._persist_tabs()
        await self._load_annotations_quietly(tab.id)
        return tab

    async def open_in_active_tab(self, document: Document, content: str, file_path: str | None) -> Tab:
        """Show ``document`` in the active tab, replacing what it displayed."""

        existing = self._tab_for_document(document.id)
        if existing is not None:
            return await self._refresh_existing(existing, document, content, file_path)

        active = self.active_tab
        if active is None:
            return await self.open_tab(document, content, file_path)

        previous = self.cache.get(active.id)
        tab = replace(active, document_id=document.id, title=_title_for(document, file_path), is_dirty=False)
        self._replace_tab(tab)
        self.annotations.invalidate(tab.id)
        self.cache.set(tab.id, _fresh_cache(document, content, file_path))
        self._known_documents[document.id] = document
        if previous is not None:
            self._unwatch_unused(previous.file_path)
        self._watch_path(file_path)
        self.bus.publish(ActiveTabChanged(tab_id=tab.id, document_id=document.id))

        await self._persistence.upsert_document(document)
        await self._persist_tabs()
        await self._load_annotations_quietly(tab.id)
        return tab

    async def _refresh_existing(
        self, tab: Tab, document: Document, content: str, file_path: str | None
    ) -> Tab:
        refreshed = replace(tab, title=_title_for(document, file_path), is_dirty=False)
        self._replace_tab(refreshed)
        self.annotations.invalidate(tab.id)
        self.cache.set(tab.id, _fresh_cache(document, content, file_path))
        self._known_documents[document.id] = document
        self._watch_path(file_path)
        if self._active_tab_id != tab.id:
            self._active_tab_id = tab.id
            self.bus.publish(ActiveTabChanged(tab_id=tab.id, document_id=document.id))

        await self._persistence.upsert_document(document)
        await self._persist_tabs()
        await self._load_annotations_quietly(tab.id)
        return refreshed

    async def close_tab(self, tab_id: str) -> bool:
        """Close a clean tab. Dirty tabs become the pending close and ``False`` is returned."""

        tab = self._require_tab(tab_id)
        if tab.is_dirty:
            self._pending_close_tab_id = tab_id
            LOGGER.debug("Tab %s has unsaved changes; close pending", tab_id)
            return False
        await self.force_close_tab(tab_id)
        return True

    async def force_close_tab(self, tab_id: str) -> None:
        """Close ``tab_id`` discarding unsaved changes."""

        tab = self._require_tab(tab_id)
        self._pending_close_tab_id = None
        ordered = self.tabs
        index = ordered.index(tab)
        cache = self.cache.delete(tab_id)
        self.annotations.forget(tab_id)
        self._cancel_autosave(tab_id)
        remaining = tuple(
            replace(other, order=position)
            for position, other in enumerate(other for other in ordered if other.id != tab_id)
        )
        self._tabs = remaining
        if cache is not None:
            self._unwatch_unused(cache.file_path)
        self.bus.publish(TabClosed(tab_id=tab_id, document_id=tab.document_id))
        LOGGER.debug("Closed tab %s", tab_id)

        promoted: Tab | None = None
        if self._active_tab_id == tab_id:
            promoted = remaining[min(index, len(remaining) - 1)] if remaining else None
            self._active_tab_id = promoted.id if promoted is not None else None
            self.bus.publish(
                ActiveTabChanged(
                    tab_id=self._active_tab_id,
                    document_id=promoted.document_id if promoted is not None else None,
                )
            )

        if promoted is not None and promoted.id not in self.cache:
            await self._materialize_cache(promoted)
        await self._persist_tabs()
        if promoted is not None:
            await self._load_annotations_quietly(promoted.id)

    def cancel_close_tab(self) -> None:
        self._pending_close_tab_id = None

    async def switch_tab(self, tab_id: str) -> Tab:
        """Make ``tab_id`` active, loading its content and annotations when needed."""

        tab = self._require_tab(tab_id)
        if self._active_tab_id != tab_id:
            self._active_tab_id = tab_id
            self.bus.publish(ActiveTabChanged(tab_id=tab_id, document_id=tab.document_id))
            LOGGER.debug("Switched to tab %s", tab_id)
            if tab_id not in self.cache:
                await self._materialize_cache(tab)
            await self._persist_tabs()
        elif tab_id not in self.cache:
            await self._materialize_cache(tab)
        await self._load_annotations_quietly(tab_id)
        return self._tab_or_none(tab_id) or tab

    async def reorder_tabs(self, from_index: int, to_index: int) -> tuple[Tab, ...]:
        """Move the tab at ``from_index`` to ``to_index`` in the visual sequence."""

        current = list(self.tabs)
        count = len(current)
        if not 0 <= from_index < count or not 0 <= to_index < count:
            raise IndexError(f"Tab index out of range: {from_index} -> {to_index} ({count} tabs)")
        if from_index == to_index:
            return self.tabs

        moved = current.pop(from_index)
        current.insert(to_index, moved)
        # Built off to the side and swapped in with one assignment.
        self._tabs = tuple(replace(tab, order=position) for position, tab in enumerate(current))
        self.bus.publish(TabsReordered(tab_ids=tuple(tab.id for tab in self._tabs)))
        await self._persist_tabs()
        return self.tabs

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------
    def update_content(self, text: str) -> None:
        """Replace the active tab's text; cosmetic-only differences leave it clean."""

        tab, cache = self._require_active()
        cache.content = text
        is_dirty = has_meaningful_diff(text, cache.saved_content)
        self._set_dirty(tab.id, is_dirty)
        if is_dirty:
            self._schedule_autosave(tab.id)
        else:
            self._cancel_autosave(tab.id)

    def update_scroll_position(self, offset: float) -> None:
        _, cache = self._require_active()
        cache.scroll_position = offset

    def set_active_title(self, title: str) -> None:
        tab, _ = self._require_active()
        self._replace_tab(replace(tab, title=title))

    # ------------------------------------------------------------------
    # Autosave
    # ------------------------------------------------------------------
    def _schedule_autosave(self, tab_id: str) -> None:
        """Save ``tab_id`` once it has gone ``autosave_delay_ms`` without edits."""

        if not self.config.autosave or self._closed:
            return
        self._cancel_autosave(tab_id)
        scheduler = self._scheduler or asyncio.get_running_loop()
        self._autosave_timers[tab_id] = scheduler.call_later(
            self.config.autosave_delay_ms / 1000.0, partial(self._autosave_due, tab_id)
        )

    def _cancel_autosave(self, tab_id: str) -> None:
        timer = self._autosave_timers.pop(tab_id, None)
        if timer is not None:
            timer.cancel()

    def _autosave_due(self, tab_id: str) -> None:
        self._autosave_timers.pop(tab_id, None)
        task = asyncio.get_running_loop().create_task(self._autosave(tab_id))
        self._autosave_tasks.add(task)
        task.add_done_callback(self._autosave_tasks.discard)

    async def _autosave(self, tab_id: str) -> None:
        tab = self._tab_or_none(tab_id)
        cache = self.cache.get(tab_id)
        if tab is None or cache is None or not cache.has_save_target:
            return
        try:
            saved = await self._save_tab(tab, cache)
        except SessionError as exc:
            # Already surfaced on the error slot.
            LOGGER.warning("Autosave of %s failed: %s", tab.display_title, exc)
            return
        if saved:
            LOGGER.debug("Autosaved tab %s", tab_id)

    # ------------------------------------------------------------------
    # External changes
    # ------------------------------------------------------------------
    async def handle_file_changed(self, path: str) -> bool:
        """Reload tabs showing ``path`` unless the change is an echo of our own save.

        The disk content always becomes the saved baseline. Tabs whose text
        differs from it only cosmetically keep their text and are not reloaded.
        """

        if self.is_self_save(path):
            LOGGER.debug("Ignoring change to %s: recent self-save", path)
            self.bus.publish(ExternalChangeSuppressed(path=path))
            return False

        key = normalize_path(path)
        targets = self._tabs_for_path(key)
        if not targets:
            return False
        content = await self._fs.read_file(targets[0][1].file_path or path)

        applied = False
        active_id = self._active_tab_id
        reload_active = False
        for tab, cache in targets:
            if self.cache.get(tab.id) is not cache or cache.file_path is None:
                continue
            if normalize_path(cache.file_path) != key:
                continue
            cache.saved_content = content
            self._cancel_autosave(tab.id)
            if not has_meaningful_diff(content, cache.content):
                self._set_dirty(tab.id, False)
                LOGGER.debug("Change to %s is cosmetic; tab %s keeps its text", cache.file_path, tab.id)
                continue
            cache.content = content
            if cache.document is not None:
                cache.document = replace(cache.document, word_count=count_words(content))
            self.annotations.invalidate(tab.id)
            self._set_dirty(tab.id, False)
            self.bus.publish(ExternalChangeApplied(tab_id=tab.id, path=cache.file_path))
            LOGGER.info("Reloaded %s after external change", cache.file_path)
            applied = True
            reload_active = reload_active or tab.id == active_id

        if reload_active and active_id is not None:
            await self._load_annotations_quietly(active_id)
            if self.get_cached_tab(active_id) is not None:
                await self.annotations.reanchor_highlights(tab_id=active_id)
        return applied

    async def consume_changes(self, stream: AsyncIterator[FileChange]) -> None:
        async for change in stream:
            try:
                await self.handle_file_changed(change.path)
            except Exception:
                LOGGER.exception("Failed to apply external change to %s", change.path)

    # ------------------------------------------------------------------
    # Workspace restore
    # ------------------------------------------------------------------
    async def restore_tabs(self) -> tuple[Tab, ...]:
        """Rebuild the tab strip from the store and pre-load the active tab."""

        persisted = await self._persistence.get_open_tabs()
        recent = await self._persistence.get_recent_documents(self.config.recent_documents_limit)
        documents = {document.id: document for document in recent}

        restored: list[Tab] = []
        active_id: str | None = None
        for record in sorted(persisted, key=lambda item: item.tab_order):
            document = documents.get(record.document_id)
            if document is None:
                document = await self._persistence.get_document(record.document_id)
            if document is None:
                LOGGER.warning("Skipping tab %s: document %s is missing", record.id, record.document_id)
                continue
            documents[document.id] = document
            self._known_documents[document.id] = document
            restored.append(
                Tab(
                    id=record.id,
                    document_id=document.id,
                    title=document.display_title,
                    is_dirty=False,
                    order=record.tab_order,
                    created_at=record.created_at,
                )
            )
            if record.is_active and active_id is None:
                active_id = record.id

        if active_id is None and restored:
            active_id = restored[0].id
        for stale_id in self.cache.tab_ids():
            self.annotations.forget(stale_id)
        self._tabs = tuple(restored)
        self._active_tab_id = active_id
        self.cache.clear()
        for tab in restored:
            document = documents[tab.document_id] if tab.document_id else None
            if document is not None:
                self._watch_path(document.file_path)

        active = self.active_tab
        if active is not None:
            await self._materialize_cache(active)
        LOGGER.info("Restored %d tab(s), active=%s", len(restored), active_id)
        self.bus.publish(WorkspaceRestored(tab_count=len(restored), active_tab_id=active_id))
        if active is not None:
            await self._load_annotations_quietly(active.id)
        return self.tabs

    # ------------------------------------------------------------------
    # Rename
    # ------------------------------------------------------------------
    async def rename_document_file(self, document_id: str, new_name: str) -> Document:
        document = self._known_documents.get(document_id)
        if document is None:
            document = await self._persistence.get_document(document_id)
        if document is None or document.source is not DocumentSource.FILE or not document.file_path:
            raise RenameError(f"Document {document_id} is not a file on disk")

        old_path = document.file_path
        new_path = await self._fs.rename_file(old_path, new_name)
        self.tracker.record(old_path)
        self.tracker.record(new_path)
        await self._persistence.rename_file(old_path, new_path)

        updated = replace(document, file_path=new_path, title=title_from_path(new_path))
        self._known_documents[document_id] = updated
        old_key = normalize_path(old_path)
        for tab in self._tabs:
            cache = self.cache.get(tab.id)
            if tab.document_id == document_id:
                self._replace_tab(replace(tab, title=updated.display_title))
            if cache is None:
                continue
            if cache.document is not None and cache.document.id == document_id:
                cache.document = updated
            if cache.file_path and normalize_path(cache.file_path) == old_key:
                cache.file_path = new_path
        self._unwatch_unused(old_path)
        self._watch_path(new_path)
        LOGGER.info("Renamed %s to %s", old_path, new_path)
        return updated

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _materialize_cache(self, tab: Tab) -> TabCache | None:
        document = self._known_documents.get(tab.document_id) if tab.document_id else None
        if document is None and tab.document_id:
            document = await self._persistence.get_document(tab.document_id)
        if document is None:
            return None

        content = ""
        if document.source is DocumentSource.FILE and document.file_path:
            try:
                content = await self._fs.read_file(document.file_path)
            except (OSError, ValueError) as exc:
                LOGGER.warning("Unable to read %s: %s", document.file_path, exc)
        elif document.keep_local_id and self._keep_local is not None:
            try:
                content = await self._keep_local.get_content(document.keep_local_id)
            except KeepLocalError as exc:
                LOGGER.warning("Unable to fetch keep-local item %s: %s", document.keep_local_id, exc)

        if self._tab_or_none(tab.id) is None:
            return None
        existing = self.cache.get(tab.id)
        if existing is not None:
            return existing
        cache = _fresh_cache(document, content, document.file_path)
        self.cache.set(tab.id, cache)
        return cache

    async def _load_annotations_quietly(self, tab_id: str) -> None:
        try:
            await self.annotations.ensure_loaded(tab_id)
        except PersistenceError as exc:
            LOGGER.warning("Unable to load annotations for tab %s: %s", tab_id, exc)

    async def _persist_tabs(self) -> None:
        self._layout_generation += 1
        requested = self._layout_generation
        async with self._persist_lock:
            if self._persisted_generation >= requested:
                return
            # Always write the freshest layout, whatever generation asked for it.
            generation = self._layout_generation
            records = [
                PersistedTab(
                    id=tab.id,
                    document_id=tab.document_id,
                    tab_order=tab.order,
                    is_active=tab.id == self._active_tab_id,
                    created_at=tab.created_at,
                )
                for tab in self.tabs
                if tab.document_id is not None
            ]
            await self._persistence.save_open_tabs(records)
            self._persisted_generation = generation
            LOGGER.debug("Persisted %d tab(s) (generation %d)", len(records), generation)

    def _tab_or_none(self, tab_id: str) -> Tab | None:
        for tab in self._tabs:
            if tab.id == tab_id:
                return tab
        return None

    def _require_tab(self, tab_id: str) -> Tab:
        tab = self._tab_or_none(tab_id)
        if tab is None:
            raise UnknownTabError(tab_id)
        return tab

    def _require_active(self) -> tuple[Tab, TabCache]:
        tab = self.active_tab
        if tab is None:
            raise SessionError("No active tab")
        return tab, self.cache.ensure(tab.id)

    def _tab_for_document(self, document_id: str) -> Tab | None:
        for tab in self.tabs:
            if tab.document_id == document_id:
                return tab
        return None

    def _tabs_for_path(self, key: str) -> list[tuple[Tab, TabCache]]:
        matches: list[tuple[Tab, TabCache]] = []
        for tab in self.tabs:
            cache = self.cache.get(tab.id)
            if cache is not None and cache.file_path and normalize_path(cache.file_path) == key:
                matches.append((tab, cache))
        return matches

    def _replace_tab(self, updated: Tab) -> None:
        self._tabs = tuple(updated if tab.id == updated.id else tab for tab in self._tabs)

    def _set_dirty(self, tab_id: str, is_dirty: bool) -> None:
        tab = self._tab_or_none(tab_id)
        if tab is not None and tab.is_dirty != is_dirty:
            self._replace_tab(replace(tab, is_dirty=is_dirty))

    def _next_order(self) -> int:
        return max((tab.order for tab in self._tabs), default=-1) + 1

    def _watch_path(self, path: str | None) -> None:
        watch = getattr(self._fs, "watch", None)
        if path and callable(watch):
            watch(path)

    def _unwatch_unused(self, path: str | None) -> None:
        unwatch = getattr(self._fs, "unwatch", None)
        if not path or not callable(unwatch):
            return
        key = normalize_path(path)
        if self._tabs_for_path(key):
            return
        unwatch(path)


def _save_key(tab_id: str, cache: TabCache) -> str:
    if cache.file_path:
        return f"file:{normalize_path(cache.file_path)}"
    if cache.document is not None:
        return f"document:{cache.document.id}"
    return f"tab:{tab_id}"


def _fresh_cache(document: Document, content: str, file_path: str | None) -> TabCache:
    return TabCache(document=document, content=content, file_path=file_path, saved_content=content)


def _title_for(document: Document | None, file_path: str | None) -> str:
    if document is not None and document.title:
        return document.title
    if file_path:
        return title_from_path(file_path)
    return UNTITLED


def _reason(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
