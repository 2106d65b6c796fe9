"""Service layer: persistence, file system, keep-local client and settings."""

from .file_system import FileChange, FileSystemGateway, FileWatcher, LocalFileSystem
from .keep_local import KeepLocalClient, KeepLocalClientSettings, KeepLocalItem
from .persistence import PersistenceGateway, SQLitePersistence
from .settings import SessionConfig, Settings, SettingsStore

__all__ = [
    "FileChange",
    "FileSystemGateway",
    "FileWatcher",
    "KeepLocalClient",
    "KeepLocalClientSettings",
    "KeepLocalItem",
    "LocalFileSystem",
    "PersistenceGateway",
    "SQLitePersistence",
    "SessionConfig",
    "Settings",
    "SettingsStore",
]
