"""Local file access and polling change notifications."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Protocol, TypeVar

from ..core.models import now_millis
from ..session.errors import RenameError
from ..utils.file_io import (
    FileSignature,
    file_has_changed,
    normalize_path,
    read_text,
    snapshot_file,
    write_text,
)

__all__ = ["FileChange", "FileSystemGateway", "FileWatcher", "LocalFileSystem", "validate_new_name"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class FileChange:
    """A file was modified on disk at ``timestamp`` (epoch ms)."""

    path: str
    timestamp: int


class FileSystemGateway(Protocol):
    async def read_file(self, path: str) -> str: ...

    async def write_file(self, path: str, content: str) -> None: ...

    async def rename_file(self, old_path: str, new_name: str) -> str: ...

    def changes(self) -> AsyncIterator[FileChange]: ...


class FileWatcher:
    """Poll watched files and report modifications.

    Changes are detected by comparing :class:`FileSignature` snapshots. A
    path is reported once it has been quiet for ``debounce_ms``, so a burst
    of writes yields a single notification.
    """

    def __init__(
        self,
        *,
        poll_interval: float = 0.5,
        debounce_ms: int = 150,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.poll_interval = poll_interval
        self.debounce_ms = debounce_ms
        self._clock = clock
        self._signatures: dict[str, FileSignature] = {}
        self._pending: dict[str, float] = {}
        self._stopped = asyncio.Event()

    @property
    def watched_paths(self) -> tuple[str, ...]:
        return tuple(self._signatures)

    def watch(self, path: Path | str) -> str:
        key = normalize_path(path)
        if key not in self._signatures:
            self._signatures[key] = snapshot_file(key)
            LOGGER.debug("Watching %s", key)
        return key

    def unwatch(self, path: Path | str) -> None:
        key = normalize_path(path)
        self._signatures.pop(key, None)
        self._pending.pop(key, None)

    def poll(self) -> list[str]:
        """Scan once and return the paths that are due for notification."""

        return self._collect(_scan(list(self._signatures.items())))

    def _collect(self, changed: list[tuple[str, FileSignature, FileSignature]]) -> list[str]:
        """Apply a scan's results; runs on the thread that owns the watcher."""

        now = self._clock()
        for key, scanned, fresh in changed:
            # Unwatched or re-watched while the scan was running.
            if self._signatures.get(key) is not scanned:
                continue
            self._signatures[key] = fresh
            self._pending[key] = now

        threshold = self.debounce_ms / 1000.0
        due = [key for key, seen_at in self._pending.items() if now - seen_at >= threshold]
        for key in due:
            del self._pending[key]
        return due

    async def changes(self) -> AsyncIterator[FileChange]:
        """Yield changes until :meth:`stop` is called.

        Only the stat and hash pass runs in the executor; watcher state is
        updated on the event loop thread.
        """

        loop = asyncio.get_running_loop()
        self._stopped.clear()
        while not self._stopped.is_set():
            changed = await loop.run_in_executor(None, _scan, list(self._signatures.items()))
            due = self._collect(changed)
            for key in due:
                yield FileChange(path=key, timestamp=now_millis())
            interval = self.poll_interval
            if self._pending:
                interval = min(interval, self.debounce_ms / 1000.0)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    def stop(self) -> None:
        self._stopped.set()


class LocalFileSystem:
    """:class:`FileSystemGateway` backed by the local disk."""

    def __init__(self, watcher: FileWatcher | None = None) -> None:
        self.watcher = watcher or FileWatcher()

    async def read_file(self, path: str) -> str:
        return await self._run_blocking(read_text, path)

    async def write_file(self, path: str, content: str) -> None:
        await self._run_blocking(write_text, path, content)

    async def rename_file(self, old_path: str, new_name: str) -> str:
        """Rename ``old_path`` within its directory and return the new path."""

        source = Path(old_path)
        target = source.with_name(validate_new_name(new_name, source.suffix))
        if target == source:
            return str(source)
        if target.exists():
            raise RenameError(f"A file named {target.name} already exists")
        try:
            await self._run_blocking(os.rename, source, target)
        except OSError as exc:
            raise RenameError(f"Failed to rename {source.name}: {exc}") from exc
        if normalize_path(source) in self.watcher.watched_paths:
            self.watcher.unwatch(source)
            self.watcher.watch(target)
        LOGGER.debug("Renamed %s to %s", source, target)
        return str(target)

    def watch(self, path: str) -> str:
        return self.watcher.watch(path)

    def unwatch(self, path: str) -> None:
        self.watcher.unwatch(path)

    def changes(self) -> AsyncIterator[FileChange]:
        return self.watcher.changes()

    def stop(self) -> None:
        self.watcher.stop()

    async def _run_blocking(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))


def _scan(entries: list[tuple[str, FileSignature]]) -> list[tuple[str, FileSignature, FileSignature]]:
    """Return ``(key, scanned, fresh)`` for every entry whose file changed."""

    changed: list[tuple[str, FileSignature, FileSignature]] = []
    for key, signature in entries:
        try:
            if file_has_changed(signature):
                changed.append((key, signature, snapshot_file(key)))
        except OSError as exc:
            LOGGER.warning("Unable to stat %s: %s", key, exc)
    return changed


def validate_new_name(new_name: str, default_suffix: str = "") -> str:
    """Return the file name to rename to, keeping ``default_suffix`` when none is given."""

    name = new_name.strip()
    if not name or name in {".", ".."}:
        raise RenameError("File name must not be empty")
    if "/" in name or "\\" in name or os.sep in name:
        raise RenameError("File name must not contain path separators")
    if not Path(name).suffix and default_suffix:
        name += default_suffix
    return name
