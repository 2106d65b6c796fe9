"""Behavioural tests for :class:`quire.session.engine.DocumentSession`."""

from __future__ import annotations

import asyncio
import logging

import pytest

from quire.core.models import Document, DocumentSource, PersistedTab
from quire.services.settings import SessionConfig
from quire.session.engine import DocumentSession
from quire.session.errors import (
    NothingToSaveError,
    RenameError,
    SaveError,
    SessionError,
    SuspiciousShrinkError,
    UnknownTabError,
)
from quire.session.events import (
    ActiveTabChanged,
    DocumentSaved,
    ExternalChangeApplied,
    ExternalChangeSuppressed,
    SaveFailed,
    TabClosed,
    TabOpened,
    TabsReordered,
    WorkspaceRestored,
)
from quire.utils.file_io import normalize_path


async def _settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def _open(session, make_file_document, name: str, content: str = "hello"):
    document, text, path = make_file_document(name, content)
    tab = await session.open_tab(document, text, path)
    return tab, document, path


# ----------------------------------------------------------------------
# Saves and self-save suppression
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_save_then_echo_is_suppressed_until_window_expires(
    session, make_file_document, file_system, clock, recorder
) -> None:
    tab, _, path = await _open(session, make_file_document, "notes.md", "hello")

    session.update_content("hello world")
    assert session.active_tab.is_dirty is True

    assert await session.save_current_file() is True
    assert file_system.get(path) == "hello world"
    assert session.active_tab.is_dirty is False
    assert session.is_self_save(path) is True
    assert recorder.of_type(DocumentSaved)[-1].path == path

    assert await session.handle_file_changed(path) is False
    assert recorder.of_type(ExternalChangeSuppressed) == [ExternalChangeSuppressed(path=path)]
    assert session.get_cached_tab(tab.id).content == "hello world"

    clock.advance(1100)
    file_system.put(path, "edited elsewhere")

    assert await session.handle_file_changed(path) is True
    assert session.get_cached_tab(tab.id).content == "edited elsewhere"
    assert recorder.of_type(ExternalChangeApplied)[-1].tab_id == tab.id


@pytest.mark.asyncio
async def test_save_of_clean_tab_is_a_noop(session, make_file_document, file_system) -> None:
    await _open(session, make_file_document, "notes.md")

    assert await session.save_current_file() is False
    assert file_system.write_calls == 0
    assert len(session.tracker) == 0


@pytest.mark.asyncio
async def test_save_without_active_tab_raises(session) -> None:
    with pytest.raises(NothingToSaveError):
        await session.save_current_file()


@pytest.mark.asyncio
async def test_save_without_target_raises(session) -> None:
    session.restore_from_cache(None, "scratch", None, True)

    with pytest.raises(NothingToSaveError):
        await session.save_current_file()


@pytest.mark.asyncio
async def test_save_failure_surfaces_on_error_slot(session, make_file_document, file_system, recorder) -> None:
    tab, _, path = await _open(session, make_file_document, "notes.md")
    session.update_content("changed")
    file_system.fail_with = OSError("disk full")

    with pytest.raises(SaveError) as excinfo:
        await session.save_current_file()

    assert str(excinfo.value) == "Failed to save notes.md: disk full"
    assert session.error_slot.current.message == "Failed to save notes.md: disk full"
    assert recorder.of_type(SaveFailed) == [SaveFailed(tab_id=tab.id, message="Failed to save notes.md: disk full")]
    assert session.active_tab.is_dirty is True
    assert session.is_self_save(path) is False


@pytest.mark.asyncio
async def test_edits_during_save_keep_tab_dirty(session, make_file_document, file_system) -> None:
    tab, _, path = await _open(session, make_file_document, "notes.md", "v1")
    session.update_content("v2")
    file_system.write_gate = asyncio.Event()

    task = asyncio.create_task(session.save_current_file())
    await _settle()
    session.update_content("v3")
    file_system.write_gate.set()

    assert await task is True
    assert file_system.get(path) == "v2"
    cache = session.get_cached_tab(tab.id)
    assert cache.saved_content == "v2"
    assert cache.content == "v3"
    assert session.active_tab.is_dirty is True


@pytest.mark.asyncio
async def test_queued_save_of_same_content_coalesces(session, make_file_document, file_system) -> None:
    await _open(session, make_file_document, "notes.md", "v1")
    session.update_content("v2")
    file_system.write_gate = asyncio.Event()

    first = asyncio.create_task(session.save_current_file())
    second = asyncio.create_task(session.save_current_file())
    await _settle()
    file_system.write_gate.set()

    assert await first is True
    assert await second is False
    assert file_system.write_calls == 1
    assert session.active_tab.is_dirty is False


@pytest.mark.asyncio
async def test_tab_closed_during_save_is_not_resurrected(
    session, make_file_document, file_system, recorder
) -> None:
    tab, _, path = await _open(session, make_file_document, "notes.md", "v1")
    session.update_content("v2")
    file_system.write_gate = asyncio.Event()

    task = asyncio.create_task(session.save_current_file())
    await _settle()
    await session.force_close_tab(tab.id)
    file_system.write_gate.set()

    assert await task is True
    assert file_system.get(path) == "v2"
    assert session.tabs == ()
    assert session.get_cached_tab(tab.id) is None
    assert recorder.of_type(DocumentSaved) == []
    assert session.is_self_save(path) is True


@pytest.mark.asyncio
async def test_keep_local_save_updates_the_store_only(session, persistence, file_system, recorder) -> None:
    document = Document(id="doc-k", source=DocumentSource.KEEP_LOCAL, keep_local_id="k1", title="Article")
    await session.open_tab(document, "body", None)
    session.update_content("body edited here")

    assert await session.save_current_file() is True

    assert persistence.documents["doc-k"].word_count == 3
    assert file_system.write_calls == 0
    assert len(session.tracker) == 0
    assert recorder.of_type(DocumentSaved)[-1].path is None
    assert session.active_tab.is_dirty is False


@pytest.mark.asyncio
async def test_successful_save_updates_document_metadata(session, make_file_document, persistence, clock) -> None:
    _, document, _ = await _open(session, make_file_document, "notes.md", "one")
    clock.advance(500)
    session.update_content("one two three")

    await session.save_current_file()

    stored = persistence.documents[document.id]
    assert stored.word_count == 3
    assert stored.last_opened_at == clock.now


# ----------------------------------------------------------------------
# Tab lifecycle
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_open_appends_with_max_order_plus_one(session, make_file_document) -> None:
    a, _, _ = await _open(session, make_file_document, "a.md")
    b, _, _ = await _open(session, make_file_document, "b.md")
    await _open(session, make_file_document, "c.md")

    await session.force_close_tab(b.id)
    d, _, _ = await _open(session, make_file_document, "d.md")

    assert [tab.order for tab in session.tabs] == [0, 1, 2]
    assert session.tabs[0].id == a.id
    assert d.order == 2
    assert session.active_tab_id == d.id


@pytest.mark.asyncio
async def test_open_existing_document_switches_and_refreshes(session, make_file_document, persistence) -> None:
    a, document, path = await _open(session, make_file_document, "a.md", "old")
    await _open(session, make_file_document, "b.md")
    await session.switch_tab(a.id)
    session.update_content("dirty edit")

    tab = await session.open_tab(document, "fresh", path)

    assert tab.id == a.id
    assert len(session.tabs) == 2
    assert session.active_tab_id == a.id
    assert session.get_cached_tab(a.id).content == "fresh"
    assert session.active_tab.is_dirty is False


@pytest.mark.asyncio
async def test_open_in_active_tab_replaces_its_document(session, make_file_document, file_system) -> None:
    a, _, old_path = await _open(session, make_file_document, "a.md")
    document, text, path = make_file_document("b.md", "bee")

    tab = await session.open_in_active_tab(document, text, path)

    assert tab.id == a.id
    assert tab.document_id == document.id
    assert tab.title == "b"
    assert session.get_cached_tab(a.id).content == "bee"
    assert normalize_path(old_path) not in file_system.watched
    assert normalize_path(path) in file_system.watched


@pytest.mark.asyncio
async def test_reorder_moves_tab_and_persists(session, make_file_document, persistence, recorder) -> None:
    a, _, _ = await _open(session, make_file_document, "a.md")
    b, _, _ = await _open(session, make_file_document, "b.md")
    c, _, _ = await _open(session, make_file_document, "c.md")

    tabs = await session.reorder_tabs(0, 2)

    assert [tab.id for tab in tabs] == [b.id, c.id, a.id]
    assert [tab.order for tab in tabs] == [0, 1, 2]
    assert [record.id for record in persistence.open_tabs] == [b.id, c.id, a.id]
    assert recorder.of_type(TabsReordered)[-1].tab_ids == (b.id, c.id, a.id)


@pytest.mark.asyncio
async def test_reorder_out_of_range_leaves_tabs_untouched(session, make_file_document) -> None:
    await _open(session, make_file_document, "a.md")
    await _open(session, make_file_document, "b.md")
    before = session.tabs

    with pytest.raises(IndexError):
        await session.reorder_tabs(0, 5)
    with pytest.raises(IndexError):
        await session.reorder_tabs(-1, 0)

    assert session.tabs == before


@pytest.mark.asyncio
async def test_close_dirty_tab_requires_confirmation(session, make_file_document, recorder) -> None:
    await _open(session, make_file_document, "a.md")
    b, _, _ = await _open(session, make_file_document, "b.md")
    session.update_content("unsaved")

    assert await session.close_tab(b.id) is False
    assert session.pending_close_tab_id == b.id
    assert len(session.tabs) == 2

    session.cancel_close_tab()
    assert session.pending_close_tab_id is None

    await session.force_close_tab(b.id)
    assert len(session.tabs) == 1
    assert session.pending_close_tab_id is None
    assert recorder.of_type(TabClosed)[-1].tab_id == b.id


@pytest.mark.asyncio
async def test_close_clean_tab_closes_immediately(session, make_file_document) -> None:
    a, _, _ = await _open(session, make_file_document, "a.md")

    assert await session.close_tab(a.id) is True
    assert session.tabs == ()
    assert session.active_tab_id is None


@pytest.mark.asyncio
async def test_closing_active_last_tab_promotes_previous(session, make_file_document, recorder) -> None:
    await _open(session, make_file_document, "a.md")
    b, _, _ = await _open(session, make_file_document, "b.md")
    c, _, _ = await _open(session, make_file_document, "c.md")

    await session.force_close_tab(c.id)

    assert session.active_tab_id == b.id
    assert recorder.of_type(ActiveTabChanged)[-1] == ActiveTabChanged(tab_id=b.id, document_id=b.document_id)


@pytest.mark.asyncio
async def test_closing_active_first_tab_promotes_next(session, make_file_document) -> None:
    a, _, _ = await _open(session, make_file_document, "a.md")
    b, _, _ = await _open(session, make_file_document, "b.md")
    await _open(session, make_file_document, "c.md")
    await session.switch_tab(a.id)

    await session.force_close_tab(a.id)

    assert session.active_tab_id == b.id
    assert [tab.order for tab in session.tabs] == [0, 1]


@pytest.mark.asyncio
async def test_closing_inactive_tab_keeps_active(session, make_file_document) -> None:
    a, _, _ = await _open(session, make_file_document, "a.md")
    b, _, _ = await _open(session, make_file_document, "b.md")

    await session.force_close_tab(a.id)

    assert session.active_tab_id == b.id


@pytest.mark.asyncio
async def test_unknown_tab_ids_raise(session) -> None:
    with pytest.raises(UnknownTabError):
        await session.switch_tab("nope")
    with pytest.raises(KeyError):
        await session.close_tab("nope")


@pytest.mark.asyncio
async def test_edits_require_an_active_tab(session) -> None:
    with pytest.raises(SessionError):
        session.update_content("text")


@pytest.mark.asyncio
async def test_update_content_back_to_saved_clears_dirty(session, make_file_document) -> None:
    await _open(session, make_file_document, "a.md", "same")

    session.update_content("different")
    assert session.active_tab.is_dirty is True
    session.update_content("same")
    assert session.active_tab.is_dirty is False


@pytest.mark.asyncio
async def test_scroll_position_and_title(session, make_file_document) -> None:
    tab, _, _ = await _open(session, make_file_document, "a.md")

    session.update_scroll_position(120.5)
    session.set_active_title("Renamed in place")

    assert session.get_cached_tab(tab.id).scroll_position == 120.5
    assert session.active_tab.title == "Renamed in place"


@pytest.mark.asyncio
async def test_freshest_layout_wins_when_saves_overlap(session, make_file_document, persistence) -> None:
    await _open(session, make_file_document, "a.md")
    await _open(session, make_file_document, "b.md")
    await _open(session, make_file_document, "c.md")
    persistence.tabs_gate = asyncio.Event()

    first = asyncio.create_task(session.reorder_tabs(0, 2))
    second = asyncio.create_task(session.reorder_tabs(0, 1))
    await _settle()
    persistence.tabs_gate.set()
    await asyncio.gather(first, second)

    assert [record.id for record in persistence.open_tabs] == [tab.id for tab in session.tabs]
    assert [record.tab_order for record in persistence.open_tabs] == [0, 1, 2]


# ----------------------------------------------------------------------
# Restore
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_restore_round_trip(
    session, make_file_document, persistence, file_system, bus, clock, scheduler, recorder
) -> None:
    a, _, _ = await _open(session, make_file_document, "a.md", "alpha")
    b, _, _ = await _open(session, make_file_document, "b.md", "beta")
    await session.switch_tab(a.id)

    restored_session = DocumentSession(
        file_system=file_system,
        persistence=persistence,
        bus=bus,
        config=SessionConfig(),
        clock=clock,
        scheduler=scheduler,
    )
    tabs = await restored_session.restore_tabs()

    assert [tab.id for tab in tabs] == [a.id, b.id]
    assert [tab.title for tab in tabs] == ["a", "b"]
    assert restored_session.active_tab_id == a.id
    assert restored_session.get_cached_tab(a.id).content == "alpha"
    assert restored_session.get_cached_tab(a.id).annotations_loaded is True
    assert restored_session.get_cached_tab(b.id) is None
    assert recorder.of_type(WorkspaceRestored)[-1] == WorkspaceRestored(tab_count=2, active_tab_id=a.id)

    await restored_session.switch_tab(b.id)
    assert restored_session.get_cached_tab(b.id).content == "beta"


@pytest.mark.asyncio
async def test_restore_skips_tabs_without_documents(session, make_file_document, persistence) -> None:
    document, _, _ = make_file_document("a.md", "alpha")
    persistence.documents[document.id] = document
    persistence.open_tabs = [
        PersistedTab(id="gone", document_id="missing", tab_order=0, is_active=True, created_at=1),
        PersistedTab(id="kept", document_id=document.id, tab_order=1, is_active=False, created_at=1),
    ]

    tabs = await session.restore_tabs()

    assert [tab.id for tab in tabs] == ["kept"]
    assert session.active_tab_id == "kept"


@pytest.mark.asyncio
async def test_restore_with_unreadable_file_yields_empty_content(
    session, make_file_document, persistence, file_system, caplog
) -> None:
    document, _, path = make_file_document("a.md", "alpha")
    persistence.documents[document.id] = document
    persistence.open_tabs = [
        PersistedTab(id="t1", document_id=document.id, tab_order=0, is_active=True, created_at=1),
    ]
    file_system.unreadable.add(normalize_path(path))
    caplog.set_level(logging.WARNING, logger="quire.session.engine")

    await session.restore_tabs()

    assert session.get_cached_tab("t1").content == ""
    assert "Unable to read" in caplog.text


@pytest.mark.asyncio
async def test_restore_of_empty_store(session, recorder) -> None:
    assert await session.restore_tabs() == ()
    assert session.active_tab_id is None
    assert recorder.of_type(WorkspaceRestored) == [WorkspaceRestored(tab_count=0, active_tab_id=None)]


@pytest.mark.asyncio
async def test_restore_from_cache_performs_no_io(session, make_file_document, persistence, file_system) -> None:
    document, _, path = make_file_document("a.md", "on disk")

    tab = session.restore_from_cache(document, "cached edit", path, True)

    assert persistence.calls == []
    assert file_system.write_calls == 0
    assert session.active_tab_id == tab.id
    assert tab.is_dirty is True
    cache = session.get_cached_tab(tab.id)
    assert cache.content == "cached edit"
    assert cache.saved_content == ""

    assert await session.save_current_file() is True
    assert file_system.get(path) == "cached edit"


# ----------------------------------------------------------------------
# External changes
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_external_change_to_unopened_path_is_ignored(session, tmp_path) -> None:
    assert await session.handle_file_changed(str(tmp_path / "other.md")) is False


@pytest.mark.asyncio
async def test_external_change_overwrites_dirty_tab(session, make_file_document, file_system) -> None:
    tab, _, path = await _open(session, make_file_document, "a.md", "original")
    session.update_content("local edits")
    file_system.put(path, "remote edits")

    assert await session.handle_file_changed(path) is True

    cache = session.get_cached_tab(tab.id)
    assert cache.content == "remote edits"
    assert cache.saved_content == "remote edits"
    assert session.active_tab.is_dirty is False


@pytest.mark.asyncio
async def test_consume_changes_keeps_going_after_a_failure(
    session, make_file_document, file_system, caplog
) -> None:
    _, _, broken = await _open(session, make_file_document, "a.md", "a")
    b, _, path = await _open(session, make_file_document, "b.md", "b")
    file_system.unreadable.add(normalize_path(broken))
    file_system.put(path, "b changed")
    caplog.set_level(logging.ERROR, logger="quire.session.engine")

    file_system.emit(broken)
    file_system.emit(path)
    file_system.finish()
    await session.consume_changes(file_system.changes())

    assert "Failed to apply external change" in caplog.text
    assert session.get_cached_tab(b.id).content == "b changed"


@pytest.mark.asyncio
async def test_start_and_close_manage_the_watch_task(session, make_file_document, file_system) -> None:
    tab, _, path = await _open(session, make_file_document, "a.md", "a")
    session.start()
    file_system.put(path, "from outside")
    file_system.emit(path)
    await _settle(10)

    assert session.get_cached_tab(tab.id).content == "from outside"

    await session.close()
    assert len(session.tracker) == 0
    with pytest.raises(SessionError):
        session.start()


@pytest.mark.asyncio
async def test_close_commits_pending_undo(session, make_file_document, persistence) -> None:
    await _open(session, make_file_document, "a.md", "The quick brown fox")
    highlight = await session.annotations.create_highlight(4, 9)
    session.annotations.delete_highlight(highlight.id)

    await session.close()

    assert "delete_highlight" in persistence.call_names()


# ----------------------------------------------------------------------
# Rename
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_rename_updates_tabs_store_and_tracker(session, make_file_document, file_system, persistence) -> None:
    tab, document, old_path = await _open(session, make_file_document, "notes.md", "text")

    updated = await session.rename_document_file(document.id, "renamed.md")

    assert updated.file_path.endswith("renamed.md")
    assert updated.title == "renamed"
    assert session.active_tab.title == "renamed"
    assert session.get_cached_tab(tab.id).file_path == updated.file_path
    assert file_system.get(updated.file_path) == "text"
    assert ("rename_file", (old_path, updated.file_path)) in persistence.calls
    assert session.is_self_save(old_path) is True
    assert session.is_self_save(updated.file_path) is True
    assert normalize_path(updated.file_path) in file_system.watched
    assert normalize_path(old_path) not in file_system.watched


@pytest.mark.asyncio
async def test_rename_of_keep_local_document_is_rejected(session) -> None:
    document = Document(id="doc-k", source=DocumentSource.KEEP_LOCAL, keep_local_id="k1", title="Article")
    await session.open_tab(document, "body", None)

    with pytest.raises(RenameError):
        await session.rename_document_file("doc-k", "x.md")


# ----------------------------------------------------------------------
# Save serialization per target
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_reopened_file_waits_for_the_closed_tabs_write(
    session, make_file_document, file_system
) -> None:
    first_tab, document, path = await _open(session, make_file_document, "notes.md", "v1")
    session.update_content("v2")
    first_gate, second_gate = asyncio.Event(), asyncio.Event()
    file_system.write_gates = [first_gate, second_gate]

    first = asyncio.create_task(session.save_current_file())
    await _settle()
    await session.force_close_tab(first_tab.id)
    second_tab = await session.open_tab(document, "v1", path)
    session.update_content("v3")
    second = asyncio.create_task(session.save_current_file())
    await _settle()

    second_gate.set()
    await _settle()
    assert file_system.write_calls == 1

    first_gate.set()
    assert await first is True
    assert await second is True
    assert file_system.max_concurrent_writes == 1
    assert file_system.get(path) == "v3"
    assert session.get_cached_tab(second_tab.id).saved_content == "v3"
    assert session.active_tab.is_dirty is False


@pytest.mark.asyncio
async def test_saves_to_different_files_do_not_wait_for_each_other(
    session, make_file_document, file_system
) -> None:
    a, _, path_a = await _open(session, make_file_document, "a.md", "a1")
    session.update_content("a2")
    gate = asyncio.Event()
    file_system.write_gates = [gate]
    blocked = asyncio.create_task(session.save_current_file())
    await _settle()

    _, _, path_b = await _open(session, make_file_document, "b.md", "b1")
    session.update_content("b2")
    assert await session.save_current_file() is True

    assert file_system.writes == [(path_b, "b2")]
    assert not blocked.done()
    gate.set()
    assert await blocked is True
    assert file_system.get(path_a) == "a2"
    assert session.get_cached_tab(a.id).saved_content == "a2"


# ----------------------------------------------------------------------
# Risky saves
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_save_that_removes_most_of_a_file_is_refused(
    session, make_file_document, file_system, recorder
) -> None:
    tab, _, path = await _open(session, make_file_document, "big.md", "x" * 2000)
    session.update_content("x" * 100)

    with pytest.raises(SuspiciousShrinkError) as excinfo:
        await session.save_current_file()

    message = "Failed to save big.md: 95% of the content would be removed"
    assert str(excinfo.value) == message
    assert excinfo.value.removed_percent == 95
    assert session.error_slot.current.message == message
    assert recorder.of_type(SaveFailed) == [SaveFailed(tab_id=tab.id, message=message)]
    assert file_system.write_calls == 0
    assert session.active_tab.is_dirty is True
    assert session.is_self_save(path) is False

    assert await session.save_current_file(force=True) is True
    assert file_system.get(path) == "x" * 100
    assert session.active_tab.is_dirty is False


@pytest.mark.asyncio
async def test_small_files_may_shrink_freely(session, make_file_document, file_system) -> None:
    _, _, path = await _open(session, make_file_document, "small.md", "y" * 900)
    session.update_content("y")

    assert await session.save_current_file() is True
    assert file_system.get(path) == "y"


# ----------------------------------------------------------------------
# Cosmetic differences
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_cosmetic_edit_keeps_tab_clean(session, make_file_document) -> None:
    await _open(session, make_file_document, "notes.md", "# Title\n\n- one\n- two\n")

    session.update_content("#Title\r\n\r\n\r\n* one  \n+ two")

    assert session.active_tab.is_dirty is False
    session.update_content("# Title\n\n- one\n- three\n")
    assert session.active_tab.is_dirty is True


@pytest.mark.asyncio
async def test_cosmetic_external_change_sets_baseline_without_reload(
    session, make_file_document, file_system, recorder
) -> None:
    tab, _, path = await _open(session, make_file_document, "notes.md", "Some __bold__ text\n")
    file_system.put(path, "Some **bold** text")

    assert await session.handle_file_changed(path) is False

    cache = session.get_cached_tab(tab.id)
    assert cache.content == "Some __bold__ text\n"
    assert cache.saved_content == "Some **bold** text"
    assert session.active_tab.is_dirty is False
    assert recorder.of_type(ExternalChangeApplied) == []


# ----------------------------------------------------------------------
# Autosave
# ----------------------------------------------------------------------
@pytest.fixture
def autosave_session(file_system, persistence, bus, clock, scheduler) -> DocumentSession:
    return DocumentSession(
        file_system=file_system,
        persistence=persistence,
        bus=bus,
        config=SessionConfig(autosave=True, autosave_delay_ms=2000),
        clock=clock,
        scheduler=scheduler,
    )


@pytest.mark.asyncio
async def test_autosave_waits_for_a_quiet_period(
    autosave_session, make_file_document, file_system, scheduler
) -> None:
    session = autosave_session
    _, _, path = await _open(session, make_file_document, "notes.md", "v1")

    session.update_content("v2")
    scheduler.advance(1.5)
    session.update_content("v3")
    scheduler.advance(1.5)
    await _settle()
    assert file_system.write_calls == 0

    scheduler.advance(0.5)
    await _settle(10)

    assert file_system.writes == [(path, "v3")]
    assert session.active_tab.is_dirty is False
    assert session.is_self_save(path) is True


@pytest.mark.asyncio
async def test_autosave_is_cancelled_by_close_and_by_revert(
    autosave_session, make_file_document, file_system, scheduler
) -> None:
    session = autosave_session
    a, _, _ = await _open(session, make_file_document, "a.md", "a1")
    session.update_content("a2")
    session.update_content("a1")
    await _open(session, make_file_document, "b.md", "b1")
    session.update_content("b2")
    await session.force_close_tab(session.active_tab_id)

    scheduler.advance(5)
    await _settle(10)

    assert file_system.write_calls == 0
    assert scheduler.active == []
    assert session.get_cached_tab(a.id).content == "a1"


@pytest.mark.asyncio
async def test_autosave_failure_stays_on_error_slot(
    autosave_session, make_file_document, file_system, scheduler, caplog
) -> None:
    session = autosave_session
    await _open(session, make_file_document, "notes.md", "v1")
    file_system.fail_with = OSError("read-only")
    caplog.set_level(logging.WARNING, logger="quire.session.engine")

    session.update_content("v2")
    scheduler.advance(2)
    await _settle(10)

    assert session.error_slot.current.message == "Failed to save notes.md: read-only"
    assert "Autosave of notes failed" in caplog.text
    assert session.active_tab.is_dirty is True


@pytest.mark.asyncio
async def test_autosave_is_off_by_default(session, make_file_document, file_system, scheduler) -> None:
    await _open(session, make_file_document, "notes.md", "v1")
    session.update_content("v2")

    scheduler.advance(10)
    await _settle(10)

    assert file_system.write_calls == 0
    assert session.active_tab.is_dirty is True


# ----------------------------------------------------------------------
# Watch task failures and interleaved layout changes
# ----------------------------------------------------------------------
@pytest.mark.asyncio
async def test_watch_task_failure_is_logged(session, file_system, caplog) -> None:
    async def broken_changes():
        raise OSError("watcher died")
        yield  # pragma: no cover

    file_system.changes = broken_changes
    caplog.set_level(logging.ERROR, logger="quire.session.engine")

    session.start()
    await _settle()

    assert "File watching stopped after an error" in caplog.text
    assert "watcher died" in caplog.text
    await session.close()


@pytest.mark.asyncio
async def test_interleaved_layout_changes_keep_orders_distinct(
    session, make_file_document, persistence, bus
) -> None:
    await _open(session, make_file_document, "a.md")
    b, _, _ = await _open(session, make_file_document, "b.md")
    await _open(session, make_file_document, "c.md")
    await _open(session, make_file_document, "d.md")
    snapshots: list[list[int]] = []

    def record(event) -> None:
        snapshots.append([tab.order for tab in session.tabs])

    for event_type in (TabsReordered, TabClosed, TabOpened):
        bus.subscribe(event_type, record)
    persistence.tabs_gate = asyncio.Event()
    e_document, e_text, e_path = make_file_document("e.md", "e")

    tasks = [
        asyncio.create_task(session.reorder_tabs(0, 3)),
        asyncio.create_task(session.force_close_tab(b.id)),
        asyncio.create_task(session.open_tab(e_document, e_text, e_path)),
        asyncio.create_task(session.reorder_tabs(2, 0)),
    ]
    await _settle()
    persistence.tabs_gate.set()
    await asyncio.gather(*tasks)

    assert len(snapshots) == 4
    for orders in snapshots:
        assert sorted(orders) == list(range(len(orders)))
    assert [record.id for record in persistence.open_tabs] == [tab.id for tab in session.tabs]
    assert [record.tab_order for record in persistence.open_tabs] == [0, 1, 2, 3]
    assert [tab.title for tab in session.tabs] == ["a", "c", "d", "e"]
