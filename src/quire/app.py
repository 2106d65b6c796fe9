"""Command line bootstrap for the Quire reader session."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_type_hints

from .core.models import Document
from .services.file_system import FileWatcher, LocalFileSystem
from .services.keep_local import KeepLocalClient, KeepLocalClientSettings
from .services.persistence import SQLitePersistence
from .services.settings import SessionConfig, Settings, SettingsStore
from .session.engine import DocumentSession
from .session.errors import SessionError
from .session.events import EventBus, ExternalChangeApplied, ExternalChangeSuppressed
from .utils import logging as logging_utils
from .utils.file_io import normalize_path

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, log_dir: str | None = None, force: bool = False) -> None:
    log_path = logging_utils.setup_logging(debug=debug, log_dir=log_dir, force=force)
    _LOGGER.debug("Logging to %s (debug=%s)", log_path, debug)


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except (OSError, TypeError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `quire` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("QUIRE_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("QUIRE_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)
    if (settings.debug_logging and not debug) or settings.log_dir:
        configure_logging(debug or settings.debug_logging, log_dir=settings.log_dir, force=True)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    try:
        return asyncio.run(
            run_session(settings, args.files, watch=args.watch, export_annotations=args.export_annotations)
        )
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return 0
    except SessionError as exc:
        print(f"quire: {exc}", file=sys.stderr)
        return 1


async def run_session(
    settings: Settings,
    files: Sequence[str] = (),
    *,
    watch: bool = False,
    export_annotations: bool = False,
    stream: TextIO | None = None,
) -> int:
    """Restore the workspace, open ``files`` and print the tab strip.

    With ``export_annotations`` the active tab's highlights and notes are
    printed as markdown after the tab strip.

    With ``watch`` the session keeps applying external changes until the
    task is cancelled.
    """

    out = stream or sys.stdout
    persistence = SQLitePersistence(settings.database_path)
    file_system = LocalFileSystem(
        FileWatcher(poll_interval=settings.watch_poll_interval, debounce_ms=settings.watch_debounce_ms)
    )
    keep_local = KeepLocalClient(KeepLocalClientSettings.from_settings(settings))
    bus = EventBus()
    session = DocumentSession(
        file_system=file_system,
        persistence=persistence,
        bus=bus,
        config=SessionConfig.from_settings(settings),
        keep_local=keep_local,
    )
    echo = _ChangeEcho(out)
    bus.subscribe(ExternalChangeApplied, echo.on_applied)
    bus.subscribe(ExternalChangeSuppressed, echo.on_suppressed)

    exit_code = 0
    try:
        await session.restore_tabs()
        for raw_path in files:
            if not await _open_file(session, file_system, persistence, raw_path):
                exit_code = 1
        _print_tabs(session, out)
        if export_annotations and session.active_tab_id is not None:
            out.write("\n")
            out.write(await session.annotations.export_markdown())
        if watch:
            session.start()
            out.write("Watching for changes (Ctrl+C to stop)\n")
            out.flush()
            await asyncio.Event().wait()
    finally:
        await session.close()
        await keep_local.aclose()
        persistence.close()
    return exit_code


async def _open_file(
    session: DocumentSession,
    file_system: LocalFileSystem,
    persistence: SQLitePersistence,
    raw_path: str,
) -> bool:
    path = normalize_path(raw_path)
    try:
        content = await file_system.read_file(path)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Unable to open %s: %s", path, exc)
        print(f"quire: cannot open {raw_path}: {exc}", file=sys.stderr)
        return False
    existing = await persistence.get_document_by_path(path)
    document = Document.for_file(path, content, existing=existing)
    await session.open_tab(document, content, path)
    return True


def _print_tabs(session: DocumentSession, out: TextIO) -> None:
    tabs = session.tabs
    if not tabs:
        out.write("No open tabs\n")
        return
    for tab in tabs:
        marker = "*" if tab.id == session.active_tab_id else " "
        dirty = " (modified)" if tab.is_dirty else ""
        out.write(f"{marker} {tab.order}: {tab.display_title}{dirty}\n")


class _ChangeEcho:
    def __init__(self, out: TextIO) -> None:
        self._out = out

    def on_applied(self, event: ExternalChangeApplied) -> None:
        self._out.write(f"Reloaded {event.path}\n")
        self._out.flush()

    def on_suppressed(self, event: ExternalChangeSuppressed) -> None:
        _LOGGER.debug("Suppressed echo of our own save to %s", event.path)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="quire",
        add_help=True,
        description="Open documents in a Quire reading session or inspect its configuration.",
    )
    parser.add_argument("files", nargs="*", metavar="FILE", help="Files to open as tabs.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.quire/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    parser.add_argument(
        "--export-annotations",
        action="store_true",
        help="Print the active tab's highlights and notes as markdown.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep running and reload tabs when their files change on disk.",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, str), raw_value.strip())
    return overrides


def _coerce_value(target: Any, raw_value: str) -> Any:
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    return raw_value


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    log_path = logging_utils.get_log_path()
    metadata = {
        "path": str(store.path),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("QUIRE_")),
        "log_path": str(log_path) if log_path is not None else None,
    }
    json.dump({"settings": asdict(settings), "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover - manual invocation
    raise SystemExit(main())
