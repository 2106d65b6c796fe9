"""Event bus used by the session to notify listeners without direct dependencies."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, TypeVar
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all session events."""


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Tab events
# =============================================================================


@dataclass(slots=True)
class TabOpened(Event):
    """Emitted when a new tab is added to the strip."""

    tab_id: str
    document_id: str | None


@dataclass(slots=True)
class TabClosed(Event):
    tab_id: str
    document_id: str | None


@dataclass(slots=True)
class ActiveTabChanged(Event):
    """Emitted when the active tab changes; ``tab_id`` is ``None`` once no tab is left."""

    tab_id: str | None
    document_id: str | None


@dataclass(slots=True)
class TabsReordered(Event):
    tab_ids: tuple[str, ...]


@dataclass(slots=True)
class WorkspaceRestored(Event):
    """Emitted after persisted tabs were loaded back into the session."""

    tab_count: int
    active_tab_id: str | None


# =============================================================================
# Save and external change events
# =============================================================================


@dataclass(slots=True)
class DocumentSaved(Event):
    """Emitted when a tab's content reached its target.

    ``path`` is ``None`` for keep-local documents, which only refresh their
    stored record.
    """

    tab_id: str
    document_id: str | None
    path: str | None


@dataclass(slots=True)
class SaveFailed(Event):
    tab_id: str
    message: str


@dataclass(slots=True)
class ExternalChangeApplied(Event):
    """Emitted when a file change from outside the session reloaded a tab."""

    tab_id: str
    path: str


@dataclass(slots=True)
class ExternalChangeSuppressed(Event):
    """Emitted when a change notification was recognised as an echo of our own save."""

    path: str


_QUIET_EVENT_TYPES.add(ExternalChangeSuppressed)


# =============================================================================
# Notification events
# =============================================================================


@dataclass(slots=True)
class StagedActionChanged(Event):
    """Emitted when a staged-action slot shows or hides a notification.

    ``action_id`` and ``message`` are ``None`` when the slot became idle.
    """

    slot: str
    action_id: str | None
    message: str | None


class EventBus:
    """Typed publish/subscribe hub.

    Handlers are invoked synchronously in registration order. Bound methods
    are held through weak references so listeners disappear with their
    owners; plain functions are held strongly. A failing handler is logged
    and does not prevent the remaining handlers from running.

    Not thread-safe: use it from the event loop thread only.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for events of exactly ``event_type``.

        Subscribing the same handler twice results in two invocations.
        """

        self._handlers[event_type].append(_HandlerRef.create(handler))
        LOGGER.debug("Subscribed handler %s to event type %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""

        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for index, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(index)
                LOGGER.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: Event) -> None:
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if not handlers:
            if not is_quiet:
                LOGGER.debug("No handlers for event type %s", event_type.__name__)
            return
        if not is_quiet:
            LOGGER.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead_indices: list[int] = []
        # Iterate over a copy so handlers may subscribe/unsubscribe while we publish.
        for index, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(index)
                continue
            try:
                handler(event)
            except Exception:
                LOGGER.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for index in reversed(dead_indices):
            if index < len(handlers) and handlers[index].resolve() is None:
                handlers.pop(index)

    def clear(self) -> None:
        self._handlers.clear()
        LOGGER.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[Event] | None = None) -> int:
        """Return the number of live registrations, optionally for one event type."""

        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for everything else."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "TabOpened",
    "TabClosed",
    "ActiveTabChanged",
    "TabsReordered",
    "WorkspaceRestored",
    "DocumentSaved",
    "SaveFailed",
    "ExternalChangeApplied",
    "ExternalChangeSuppressed",
    "StagedActionChanged",
]
