"""
Version marker persistence — atomic read/write of installed versions.

A marker is a plain-text file holding the decimal installed version of
one install variant (``games/<branch>/<variant>.version``) or the
runtime version string (``shared/runtime/latest.version``). Writes are
atomic (write to temp file, then rename) so a crash mid-write never
leaves a half-written number that could be mistaken for a real install.

Absence of the marker means "not installed", whatever else is on disk.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from src.core.errors import FileSystemError
from src.core.models.release import NOT_INSTALLED

logger = logging.getLogger(__name__)


def read_text_marker(path: Path) -> str | None:
    """Stripped contents of ``path``, or None when missing/empty/unreadable."""
    if not path.is_file():
        return None
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.warning("Cannot read marker %s: %s", path, e)
        return None
    return text or None


def write_text_marker(path: Path, value: str) -> None:
    """Atomically replace ``path`` with ``value``.

    Raises:
        FileSystemError: The marker cannot be written.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".marker_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as out:
                out.write(value + "\n")
                out.flush()
                os.fsync(out.fileno())
            os.replace(tmp, path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise
    except OSError as e:
        logger.error("Failed to write marker %s: %s", path, e)
        raise FileSystemError(f"cannot write version marker {path}: {e}", details={"path": path}) from e
    logger.debug("Marker %s = %s", path, value)


def read_version(path: Path) -> int:
    """Installed version recorded at ``path``; ``NOT_INSTALLED`` when absent.

    A marker that does not hold a non-negative integer is treated as
    absent (and logged).
    """
    text = read_text_marker(path)
    if text is None:
        return NOT_INSTALLED
    try:
        version = int(text)
    except ValueError:
        logger.warning("Corrupt version marker %s (%r) — treating as not installed", path, text)
        return NOT_INSTALLED
    if version < 0:
        logger.warning("Negative version in marker %s — treating as not installed", path)
        return NOT_INSTALLED
    return version


def write_version(path: Path, version: int) -> None:
    write_text_marker(path, str(int(version)))


def clear_marker(path: Path) -> None:
    """Remove ``path`` so the variant reads as not installed."""
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        raise FileSystemError(f"cannot remove version marker {path}: {e}", details={"path": path}) from e
