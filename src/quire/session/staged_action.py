"""Single-slot pending action with auto-commit, used for undo and error notices."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from ..core.models import new_id
from .events import EventBus, StagedActionChanged

__all__ = [
    "DEFAULT_ERROR_DURATION_MS",
    "DEFAULT_UNDO_DURATION_MS",
    "Scheduler",
    "SlotState",
    "StagedAction",
    "StagedActionSlot",
    "TimerHandle",
    "error_slot",
    "undo_slot",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_UNDO_DURATION_MS = 5000
DEFAULT_ERROR_DURATION_MS = 4000

Effect = Callable[[], Any]


class TimerHandle(Protocol):
    def cancel(self) -> None:  # pragma: no cover - protocol definition
        ...


class Scheduler(Protocol):
    """Anything that can run ``callback`` after ``delay`` seconds, like an asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:  # pragma: no cover - protocol definition
        ...


class SlotState(Enum):
    IDLE = "idle"
    STAGED = "staged"
    COMMITTED = "committed"
    UNDONE = "undone"


def _noop() -> None:
    return None


@dataclass(slots=True)
class StagedAction:
    """A message plus the effects to run when the action commits or is undone."""

    message: str
    on_commit: Effect = _noop
    on_undo: Effect = _noop
    id: str = field(default_factory=new_id)


class StagedActionSlot:
    """Holds at most one pending action and commits it when its deadline passes.

    Staging a new action while one is pending commits the previous one first.
    Exactly one of ``on_commit``/``on_undo`` runs, exactly once, for every
    staged action. Coroutine effects are scheduled as tasks on the running
    loop; failures from either kind of effect are logged.
    """

    def __init__(
        self,
        name: str,
        *,
        duration_ms: int,
        scheduler: Scheduler | None = None,
        bus: EventBus | None = None,
    ) -> None:
        if duration_ms <= 0:
            raise ValueError("duration_ms must be positive")
        self.name = name
        self.duration_ms = duration_ms
        self._scheduler = scheduler
        self._bus = bus
        self._current: StagedAction | None = None
        self._timer: TimerHandle | None = None
        self._state = SlotState.IDLE
        self._last_outcome: SlotState | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Read-only projections
    # ------------------------------------------------------------------
    @property
    def current(self) -> StagedAction | None:
        return self._current

    @property
    def state(self) -> SlotState:
        return self._state

    @property
    def last_outcome(self) -> SlotState | None:
        """``COMMITTED`` or ``UNDONE`` for the most recently resolved action."""

        return self._last_outcome

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def stage(self, action: StagedAction) -> StagedAction:
        # A commit effect may stage a follow-up; that one is superseded too.
        while self._current is not None:
            LOGGER.debug("Slot %s: action %s superseded by %s", self.name, self._current.id, action.id)
            self._resolve(SlotState.COMMITTED)

        self._current = action
        self._state = SlotState.STAGED
        action_id = action.id
        self._timer = self._resolve_scheduler().call_later(
            self.duration_ms / 1000.0, lambda: self._on_deadline(action_id)
        )
        LOGGER.debug("Slot %s: staged %s (%s)", self.name, action_id, action.message)
        self._publish(action)
        return action

    def request_undo(self) -> bool:
        if self._current is None:
            return False
        self._resolve(SlotState.UNDONE)
        return True

    def request_commit(self) -> bool:
        if self._current is None:
            return False
        self._resolve(SlotState.COMMITTED)
        return True

    def notify_error(self, message: str) -> StagedAction:
        """Show ``message`` until the deadline; undoing only dismisses it."""

        return self.stage(StagedAction(message=message))

    def flush(self) -> bool:
        """Commit the pending action now, if any."""

        return self.request_commit()

    async def drain(self) -> None:
        """Wait for asynchronous effects that were already started."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _on_deadline(self, action_id: str) -> None:
        current = self._current
        if current is None or current.id != action_id:
            return
        LOGGER.debug("Slot %s: deadline reached for %s", self.name, action_id)
        self._timer = None
        self._resolve(SlotState.COMMITTED)

    def _resolve(self, outcome: SlotState) -> None:
        action = self._current
        if action is None:
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        # Clear before running the effect so re-entrant calls see an idle slot.
        self._current = None
        self._state = outcome
        self._last_outcome = outcome
        effect = action.on_commit if outcome is SlotState.COMMITTED else action.on_undo
        LOGGER.debug("Slot %s: %s %s", self.name, outcome.value, action.id)
        self._run_effect(action, effect)
        if self._current is None:
            self._state = SlotState.IDLE
            self._publish(None)

    def _run_effect(self, action: StagedAction, effect: Effect) -> None:
        try:
            result = effect()
        except Exception:
            LOGGER.exception("Slot %s: effect for %s failed", self.name, action.id)
            return
        if not inspect.isawaitable(result):
            return
        task = asyncio.ensure_future(result)
        self._tasks.add(task)
        task.add_done_callback(lambda finished: self._on_effect_done(action, finished))

    def _on_effect_done(self, action: StagedAction, task: asyncio.Future[Any]) -> None:
        self._tasks.discard(task)  # type: ignore[arg-type]
        if task.cancelled():
            LOGGER.warning("Slot %s: effect for %s was cancelled", self.name, action.id)
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Slot %s: effect for %s failed", self.name, action.id, exc_info=exc)

    def _resolve_scheduler(self) -> Scheduler:
        if self._scheduler is not None:
            return self._scheduler
        return asyncio.get_running_loop()

    def _publish(self, action: StagedAction | None) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            StagedActionChanged(
                slot=self.name,
                action_id=action.id if action is not None else None,
                message=action.message if action is not None else None,
            )
        )


def undo_slot(
    *,
    duration_ms: int = DEFAULT_UNDO_DURATION_MS,
    scheduler: Scheduler | None = None,
    bus: EventBus | None = None,
) -> StagedActionSlot:
    return StagedActionSlot("undo", duration_ms=duration_ms, scheduler=scheduler, bus=bus)


def error_slot(
    *,
    duration_ms: int = DEFAULT_ERROR_DURATION_MS,
    scheduler: Scheduler | None = None,
    bus: EventBus | None = None,
) -> StagedActionSlot:
    return StagedActionSlot("error", duration_ms=duration_ms, scheduler=scheduler, bus=bus)
