"""In-memory store of per-tab working state."""

from __future__ import annotations

from typing import Iterator

from ..core.models import TabCache

__all__ = ["TabCacheStore"]


class TabCacheStore:
    """Mapping of tab id to :class:`TabCache`. Performs no I/O."""

    __slots__ = ("_entries",)

    def __init__(self) -> None:
        self._entries: dict[str, TabCache] = {}

    def get(self, tab_id: str) -> TabCache | None:
        return self._entries.get(tab_id)

    def set(self, tab_id: str, cache: TabCache) -> None:
        self._entries[tab_id] = cache

    def delete(self, tab_id: str) -> TabCache | None:
        return self._entries.pop(tab_id, None)

    def ensure(self, tab_id: str) -> TabCache:
        """Return the cache for ``tab_id``, creating an empty one when missing."""

        cache = self._entries.get(tab_id)
        if cache is None:
            cache = TabCache()
            self._entries[tab_id] = cache
        return cache

    def clear(self) -> None:
        self._entries.clear()

    def tab_ids(self) -> tuple[str, ...]:
        return tuple(self._entries)

    def items(self) -> Iterator[tuple[str, TabCache]]:
        return iter(list(self._entries.items()))

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
