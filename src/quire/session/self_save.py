"""Tracks recent writes made by the session so their change echoes can be ignored."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from ..core.models import now_millis
from ..utils.file_io import normalize_path

__all__ = ["DEFAULT_SUPPRESSION_WINDOW_MS", "SelfSaveTracker"]

LOGGER = logging.getLogger(__name__)

DEFAULT_SUPPRESSION_WINDOW_MS = 1000


class SelfSaveTracker:
    """Remember when each path was last written by us.

    A path counts as a self-save while ``now - saved_at < window_ms``.
    Queries never modify the recorded state, so asking twice inside the
    window yields the same answer. Expiry is evaluated lazily; no timers
    are involved.
    """

    def __init__(
        self,
        *,
        window_ms: int = DEFAULT_SUPPRESSION_WINDOW_MS,
        clock: Callable[[], int] = now_millis,
    ) -> None:
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self.window_ms = window_ms
        self._clock = clock
        self._saved_at: dict[str, int] = {}

    def record(self, path: Path | str, when: int | None = None) -> None:
        key = normalize_path(path)
        self._saved_at[key] = self._clock() if when is None else when
        LOGGER.debug("Recorded self-save for %s", key)

    def is_within_window(self, path: Path | str, now: int | None = None) -> bool:
        saved_at = self._saved_at.get(normalize_path(path))
        if saved_at is None:
            return False
        current = self._clock() if now is None else now
        return current - saved_at < self.window_ms

    def saved_at(self, path: Path | str) -> int | None:
        return self._saved_at.get(normalize_path(path))

    def forget(self, path: Path | str) -> None:
        self._saved_at.pop(normalize_path(path), None)

    def clear(self) -> None:
        self._saved_at.clear()

    def __len__(self) -> int:
        return len(self._saved_at)
