"""Logging setup for quire sessions: a rotating log file plus stderr."""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["LOG_FILE_NAME", "get_log_path", "resolve_log_dir", "setup_logging"]

LOG_FILE_NAME = "quire.log"
_DEFAULT_LOG_DIR = Path.home() / ".quire" / "logs"
_LIBRARY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore")
_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
_LOG_PATH: Path | None = None


def resolve_log_dir(log_dir: Path | str | None = None) -> Path:
    """Pick the log directory: ``log_dir``, then ``QUIRE_LOG_DIR``, then ``~/.quire/logs``."""

    return Path(log_dir or os.environ.get("QUIRE_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()


def setup_logging(
    *,
    debug: bool = False,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Send quire's records to ``<log_dir>/quire.log`` and warnings to stderr.

    The file receives INFO and above (DEBUG with ``debug``). The console only
    shows warnings unless ``debug`` is set, so the tab listing on stdout stays
    readable. Later calls are ignored unless ``force`` is given, which is how
    the CLI applies ``Settings.debug_logging`` and ``Settings.log_dir`` once
    settings are loaded.
    """

    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    level = logging.DEBUG if debug else logging.INFO
    target_dir = resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / LOG_FILE_NAME

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handlers: list[logging.Handler] = [file_handler]

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
        console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the file configured by the last :func:`setup_logging` call."""

    return _LOG_PATH
