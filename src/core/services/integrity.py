"""
Checksum verification for downloaded artifacts.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from src.core.errors import FileSystemError, IntegrityError

logger = logging.getLogger(__name__)


def sha256_file(path: Path) -> str:
    """Hex SHA-256 of a file, streamed in 64 KiB chunks."""
    digest = hashlib.sha256()
    with path.open("rb") as source:
        for chunk in iter(lambda: source.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_sha256(path: Path, expected_hex: str) -> str:
    """Compare ``path``'s digest against ``expected_hex``.

    A mismatching file is deleted so it is never mistaken for a valid
    cached download later.

    Returns:
        The actual digest.

    Raises:
        IntegrityError: Digest mismatch (file removed).
        FileSystemError: The file cannot be read.
    """
    expected = expected_hex.strip().lower()
    try:
        actual = sha256_file(path)
    except FileNotFoundError as e:
        raise FileSystemError(f"cannot verify missing file {path}", details={"path": path}) from e
    except OSError as e:
        raise FileSystemError(f"cannot read {path}: {e}", details={"path": path}) from e

    if actual != expected:
        logger.warning("Checksum mismatch for %s: expected %s, got %s", path, expected, actual)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error("Cannot remove corrupted file %s: %s", path, e)
        raise IntegrityError(
            f"checksum mismatch for {path.name}: expected {expected}, got {actual}",
            path=path,
            expected=expected,
            actual=actual,
            details={"path": path},
        )

    logger.debug("Verified %s (sha256=%s)", path, actual)
    return actual


def cached_file_valid(path: Path, expected_hex: str = "") -> bool:
    """Whether ``path`` exists and (when a digest is known) matches it.

    A cached file with the wrong digest is removed.
    """
    if not path.is_file():
        return False
    if not expected_hex:
        return True
    try:
        verify_sha256(path, expected_hex)
    except IntegrityError:
        return False
    return True
