"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from quire.core.models import Document
from quire.services.settings import SessionConfig
from quire.session.engine import DocumentSession
from quire.session.events import EventBus
from tests.helpers import EventRecorder, FakeClock, FakeScheduler, MemoryFileSystem, MemoryPersistence


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def file_system() -> MemoryFileSystem:
    return MemoryFileSystem()


@pytest.fixture
def persistence() -> MemoryPersistence:
    return MemoryPersistence()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    from quire.session import events

    recorder = EventRecorder()
    for name in events.__all__:
        event_type = getattr(events, name)
        if isinstance(event_type, type) and issubclass(event_type, events.Event) and event_type is not events.Event:
            bus.subscribe(event_type, recorder)
    return recorder


@pytest.fixture
def session(
    file_system: MemoryFileSystem,
    persistence: MemoryPersistence,
    bus: EventBus,
    clock: FakeClock,
    scheduler: FakeScheduler,
) -> DocumentSession:
    return DocumentSession(
        file_system=file_system,
        persistence=persistence,
        bus=bus,
        config=SessionConfig(),
        clock=clock,
        scheduler=scheduler,
    )


@pytest.fixture
def make_file_document(tmp_path, file_system: MemoryFileSystem):
    """Create a file document whose content lives in the in-memory file system."""

    def factory(name: str = "notes.md", content: str = "hello") -> tuple[Document, str, str]:
        path = str(tmp_path / name)
        file_system.put(path, content)
        return Document.for_file(path, content), content, path

    return factory
