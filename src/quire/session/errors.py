"""Exception types raised by the document session and its gateways."""

from __future__ import annotations

__all__ = [
    "SessionError",
    "SaveError",
    "SuspiciousShrinkError",
    "NothingToSaveError",
    "UnknownTabError",
    "PersistenceError",
    "KeepLocalError",
    "RenameError",
]


class SessionError(RuntimeError):
    """Base class for every error raised by the session layer."""


class SaveError(SessionError):
    """Raised when writing a tab's content to its target fails."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"Failed to save {name}: {reason}")
        self.name = name
        self.reason = reason


class SuspiciousShrinkError(SaveError):
    """Raised instead of writing content that would remove most of a file."""

    def __init__(self, name: str, removed_percent: int) -> None:
        super().__init__(name, f"{removed_percent}% of the content would be removed")
        self.removed_percent = removed_percent


class NothingToSaveError(SessionError):
    """Raised when a save is requested with no active tab or save target."""


class UnknownTabError(SessionError, KeyError):
    """Raised when an operation references a tab id that is not open."""

    def __init__(self, tab_id: str) -> None:
        super().__init__(f"Unknown tab: {tab_id}")
        self.tab_id = tab_id

    def __str__(self) -> str:
        return f"Unknown tab: {self.tab_id}"


class PersistenceError(SessionError):
    """Raised when the backing store rejects a read or write."""


class KeepLocalError(SessionError):
    """Raised when the keep-local service cannot be reached or answers with an error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RenameError(SessionError):
    """Raised for invalid rename targets."""
