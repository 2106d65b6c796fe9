"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..session.self_save import DEFAULT_SUPPRESSION_WINDOW_MS
from ..session.staged_action import DEFAULT_ERROR_DURATION_MS, DEFAULT_UNDO_DURATION_MS

__all__ = [
    "DEFAULT_AUTOSAVE_DELAY_MS",
    "Settings",
    "SettingsStore",
    "SessionConfig",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".quire"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_DEFAULT_DATABASE_PATH = _SETTINGS_DIR / "quire.db"
_SETTINGS_VERSION = 1
DEFAULT_AUTOSAVE_DELAY_MS = 2000
_ENV_OVERRIDES: Mapping[str, str] = {
    "QUIRE_DATABASE_PATH": "database_path",
    "QUIRE_KEEP_LOCAL_URL": "keep_local_base_url",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "QUIRE_DEBUG_LOGGING": "debug_logging",
    "QUIRE_AUTOSAVE": "autosave",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "QUIRE_REQUEST_TIMEOUT": "request_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "QUIRE_SUPPRESSION_WINDOW_MS": "suppression_window_ms",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_POSITIVE_FIELDS: tuple[str, ...] = (
    "suppression_window_ms",
    "undo_duration_ms",
    "error_duration_ms",
    "autosave_delay_ms",
    "watch_poll_interval",
    "recent_documents_limit",
    "request_timeout",
)
_NON_NEGATIVE_FIELDS: tuple[str, ...] = (
    "watch_debounce_ms",
    "max_retries",
    "retry_min_seconds",
    "retry_max_seconds",
)


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    database_path: str = str(_DEFAULT_DATABASE_PATH)
    suppression_window_ms: int = DEFAULT_SUPPRESSION_WINDOW_MS
    undo_duration_ms: int = DEFAULT_UNDO_DURATION_MS
    error_duration_ms: int = DEFAULT_ERROR_DURATION_MS
    watch_poll_interval: float = 0.5
    watch_debounce_ms: int = 150
    recent_documents_limit: int = 100
    keep_local_base_url: str = "http://127.0.0.1:8787"
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    autosave: bool = False
    autosave_delay_ms: int = DEFAULT_AUTOSAVE_DELAY_MS
    debug_logging: bool = False
    log_dir: str | None = None


@dataclass(slots=True, frozen=True)
class SessionConfig:
    """Timing knobs consumed by :class:`~quire.session.engine.DocumentSession`."""

    suppression_window_ms: int = DEFAULT_SUPPRESSION_WINDOW_MS
    undo_duration_ms: int = DEFAULT_UNDO_DURATION_MS
    error_duration_ms: int = DEFAULT_ERROR_DURATION_MS
    recent_documents_limit: int = 100
    autosave: bool = False
    autosave_delay_ms: int = DEFAULT_AUTOSAVE_DELAY_MS

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionConfig:
        return cls(
            suppression_window_ms=settings.suppression_window_ms,
            undo_duration_ms=settings.undo_duration_ms,
            error_duration_ms=settings.error_duration_ms,
            recent_documents_limit=settings.recent_documents_limit,
            autosave=settings.autosave,
            autosave_delay_ms=settings.autosave_delay_ms,
        )


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            LOGGER.debug("Settings loaded from %s (%d keys)", self._path, len(data))

        if payload and payload.get("version") != _SETTINGS_VERSION:
            try:
                self.save(settings)
            except OSError as exc:  # pragma: no cover - read-only settings dir
                LOGGER.warning("Failed to migrate settings payload: %s", exc)

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return _validate(self._apply_env_overrides(settings))

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        data["version"] = _SETTINGS_VERSION
        return data

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered: Dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in allowed or value is None:
                continue
            filtered[key] = value
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _validate(settings: Settings) -> Settings:
    """Reset numeric fields holding non-numbers or out-of-range values to their defaults."""

    defaults = Settings()
    fixes: Dict[str, Any] = {}
    for name in (*_POSITIVE_FIELDS, *_NON_NEGATIVE_FIELDS):
        value = getattr(settings, name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            valid = False
        elif name in _POSITIVE_FIELDS:
            valid = value > 0
        else:
            valid = value >= 0
        if not valid:
            fixes[name] = getattr(defaults, name)
            LOGGER.warning("Setting %s=%r is out of range; using %r", name, value, fixes[name])
    if fixes:
        settings = replace(settings, **fixes)
    return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}
