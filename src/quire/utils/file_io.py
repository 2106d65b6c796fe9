"""File IO helpers shared by the file system gateway and the session engine."""

from __future__ import annotations

import codecs
import hashlib
import locale
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

__all__ = [
    "FileSignature",
    "normalize_path",
    "read_text",
    "write_text",
    "snapshot_file",
    "file_has_changed",
    "compute_text_digest",
    "count_words",
    "title_from_path",
]

_BOM_MAP: dict[bytes, str] = {
    codecs.BOM_UTF8: "utf-8-sig",
    codecs.BOM_UTF16_LE: "utf-16-le",
    codecs.BOM_UTF16_BE: "utf-16-be",
    codecs.BOM_UTF32_LE: "utf-32-le",
    codecs.BOM_UTF32_BE: "utf-32-be",
}
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(slots=True, frozen=True)
class FileSignature:
    """Fingerprint of a file on disk used to detect modifications."""

    path: Path
    digest: str
    size: int
    modified_at: float
    exists: bool = True


def normalize_path(path: Path | str) -> str:
    """Return the canonical string key used to compare file paths."""

    return str(Path(path).expanduser().resolve())


def read_text(
    path: Path | str,
    *,
    encoding: str | None = None,
    errors: str = "strict",
    normalize_newlines: bool = True,
) -> str:
    """Read a text file with encoding detection and optional newline normalization."""

    target = Path(path)
    raw = target.read_bytes()
    detected_encoding = encoding or _detect_encoding(raw)
    text = raw.decode(detected_encoding, errors=errors)
    text = _strip_bom(text)
    return _normalize_newlines(text) if normalize_newlines else text


def write_text(
    path: Path | str,
    content: str,
    *,
    encoding: str = "utf-8",
    atomic: bool = True,
) -> Path:
    """Write ``content`` to ``path``, replacing the target atomically by default."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    if not atomic:
        with target.open("w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        return target

    descriptor, tmp_name = tempfile.mkstemp(
        dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(descriptor, "w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, target)
    finally:
        if os.path.exists(tmp_name):  # pragma: no cover - cleanup path
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
    return target


def snapshot_file(path: Path | str) -> FileSignature:
    """Compute a :class:`FileSignature` for ``path``; missing files get an empty one."""

    target = Path(path)
    try:
        data = target.read_bytes()
        stat = target.stat()
    except FileNotFoundError:
        return FileSignature(path=target, digest="", size=0, modified_at=0.0, exists=False)
    digest = hashlib.sha256(data).hexdigest()
    return FileSignature(path=target, digest=digest, size=stat.st_size, modified_at=stat.st_mtime)


def file_has_changed(signature: FileSignature) -> bool:
    """Return ``True`` if the file represented by ``signature`` has changed on disk."""

    try:
        stat = signature.path.stat()
    except FileNotFoundError:
        return signature.exists

    if not signature.exists:
        return True
    if stat.st_mtime != signature.modified_at or stat.st_size != signature.size:
        return True

    current_digest = hashlib.sha256(signature.path.read_bytes()).hexdigest()
    return current_digest != signature.digest


def compute_text_digest(text: str) -> str:
    """Return a SHA-256 digest for the provided text."""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def count_words(text: str) -> int:
    """Count whitespace-separated words."""

    stripped = text.strip()
    if not stripped:
        return 0
    return len(_WHITESPACE_RE.split(stripped))


def title_from_path(path: Path | str) -> str:
    """Return the file name without its extension, used as a document title."""

    name = Path(path).name
    dot = name.rfind(".")
    if dot <= 0:
        return name
    return name[:dot]


def _detect_encoding(raw: bytes) -> str:
    for bom, encoding in _BOM_MAP.items():
        if raw.startswith(bom):
            return encoding

    preferred = locale.getpreferredencoding(False) or "utf-8"
    seen: set[str] = set()
    for candidate in ("utf-8", preferred, "latin-1"):
        if not candidate or candidate in seen:
            continue
        seen.add(candidate)
        try:
            raw.decode(candidate)
            return candidate
        except UnicodeDecodeError:
            continue
    return "utf-8"


def _normalize_newlines(text: str) -> str:
    if "\r" not in text:
        return text
    text = text.replace("\r\n", "\n")
    return text.replace("\r", "\n")


def _strip_bom(text: str) -> str:
    return text[1:] if text.startswith("\ufeff") else text
