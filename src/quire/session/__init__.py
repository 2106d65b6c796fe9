"""Document session engine, staged actions and self-save suppression."""

from .annotations import AnnotationService
from .engine import DocumentSession
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
from .events import EventBus
from .self_save import SelfSaveTracker
from .staged_action import SlotState, StagedAction, StagedActionSlot, error_slot, undo_slot
from .tab_cache import TabCacheStore

__all__ = [
    "AnnotationService",
    "DocumentSession",
    "EventBus",
    "KeepLocalError",
    "NothingToSaveError",
    "PersistenceError",
    "RenameError",
    "SaveError",
    "SelfSaveTracker",
    "SessionError",
    "SlotState",
    "StagedAction",
    "StagedActionSlot",
    "SuspiciousShrinkError",
    "TabCacheStore",
    "UnknownTabError",
    "error_slot",
    "undo_slot",
]
