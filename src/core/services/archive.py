"""
Archive and directory helpers for provisioning.

Extraction refuses entries that would land outside the destination
(absolute paths, ``..`` traversal, links pointing out of the tree).
Directory swaps retry the final rename because freshly extracted files
can be briefly locked by antivirus scanners on some platforms.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import sys
import tarfile
import zipfile
from pathlib import Path

from src.core.errors import FileSystemError, OperationCancelled
from src.core.reliability.cancellation import CancelToken, ensure_token

logger = logging.getLogger(__name__)

_TAR_SUFFIXES = (".tar.gz", ".tgz", ".tar.xz", ".tar.bz2", ".tar")


def _inside(root: Path, name: str) -> Path:
    path = Path(name)
    if path.is_absolute() or name.startswith(("/", "\\")):
        raise FileSystemError(f"archive entry has an absolute path: {name}")
    destination = (root / path).resolve()
    try:
        destination.relative_to(root)
    except ValueError:
        raise FileSystemError(f"archive entry escapes the destination: {name}") from None
    return destination


def _extract_zip(archive: Path, root: Path) -> int:
    count = 0
    with zipfile.ZipFile(archive) as bundle:
        for member in bundle.infolist():
            if not member.filename:
                continue
            destination = _inside(root, member.filename)
            count += 1
            if member.is_dir():
                destination.mkdir(parents=True, exist_ok=True)
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            with bundle.open(member) as source, destination.open("wb") as target:
                shutil.copyfileobj(source, target)
            # Unix permission bits live in the high word of external_attr
            mode = (member.external_attr >> 16) & 0o777
            if mode:
                destination.chmod(mode)
    return count


def _extract_tar(archive: Path, root: Path) -> int:
    with tarfile.open(archive) as bundle:
        members = bundle.getmembers()
        for member in members:
            _inside(root, member.name)
            if member.issym() or member.islnk():
                target = member.linkname
                base = (root / member.name).parent if member.issym() else root
                resolved = (base / target).resolve()
                try:
                    resolved.relative_to(root)
                except ValueError:
                    raise FileSystemError(f"archive link escapes the destination: {member.name}") from None
        if hasattr(tarfile, "data_filter"):
            bundle.extractall(root, members=members, filter="fully_trusted")
        else:
            bundle.extractall(root, members=members)
    return len(members)


def extract_archive(archive: Path, dest: Path) -> Path:
    """Extract a ``.zip`` or tarball into ``dest`` (created if needed).

    Raises:
        FileSystemError: Corrupt archive, unsafe entry, or write failure.
    """
    root = dest.resolve()
    root.mkdir(parents=True, exist_ok=True)
    name = archive.name.lower()
    logger.info("Extracting %s to %s", archive.name, dest)
    try:
        if name.endswith(_TAR_SUFFIXES):
            count = _extract_tar(archive, root)
        elif zipfile.is_zipfile(archive):
            count = _extract_zip(archive, root)
        elif tarfile.is_tarfile(archive):
            count = _extract_tar(archive, root)
        else:
            raise FileSystemError(f"unrecognised archive format: {archive.name}", details={"path": archive})
    except (zipfile.BadZipFile, tarfile.TarError) as e:
        raise FileSystemError(f"corrupt archive {archive.name}: {e}", details={"path": archive}) from e
    except OSError as e:
        raise FileSystemError(f"cannot extract {archive.name}: {e}", details={"path": archive}) from e
    logger.debug("Extracted %d entries from %s", count, archive.name)
    return dest


def flatten_single_root(directory: Path) -> bool:
    """Hoist the contents of a lone top-level folder into ``directory``.

    Archives often wrap everything in ``jdk-21.0.3+9-jre/``; the
    provisioner wants ``bin/java`` directly under the live directory.

    Returns:
        True if the tree was flattened.
    """
    entries = list(directory.iterdir())
    if len(entries) != 1 or not entries[0].is_dir():
        return False

    wrapper = entries[0]
    # Rename first so a child with the same name as the wrapper cannot collide
    holding = directory / f".flatten-{wrapper.name}"
    try:
        wrapper.rename(holding)
        for child in holding.iterdir():
            child.rename(directory / child.name)
        holding.rmdir()
    except OSError as e:
        raise FileSystemError(f"cannot flatten {directory}: {e}", details={"path": directory}) from e
    logger.debug("Flattened wrapper folder %s", wrapper.name)
    return True


def _make_writable(func, path, _exc) -> None:  # noqa: ANN001
    # Read-only files block rmtree on Windows
    os.chmod(path, stat.S_IWRITE)
    func(path)


def remove_tree(path: Path) -> None:
    """Delete a directory tree (no-op when absent)."""
    if not path.exists():
        return
    try:
        if sys.version_info >= (3, 12):
            shutil.rmtree(path, onexc=_make_writable)
        else:
            shutil.rmtree(path, onerror=_make_writable)
    except OSError as e:
        raise FileSystemError(f"cannot remove {path}: {e}", details={"path": path}) from e


def reset_directory(path: Path) -> None:
    """Wipe ``path`` and recreate it empty."""
    remove_tree(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FileSystemError(f"cannot create {path}: {e}", details={"path": path}) from e


def swap_directory(
    source: Path,
    live: Path,
    *,
    attempts: int = 5,
    delay: float = 2.0,
    cancel: CancelToken | None = None,
) -> None:
    """Replace ``live`` with ``source``: remove the old tree, then rename.

    The rename is retried up to ``attempts`` times with ``delay``
    seconds between tries.
    """
    cancel = ensure_token(cancel)
    remove_tree(live)
    live.parent.mkdir(parents=True, exist_ok=True)

    last_error: OSError | None = None
    for attempt in range(1, max(1, attempts) + 1):
        try:
            source.rename(live)
            logger.debug("Moved %s into place at %s", source.name, live)
            return
        except OSError as e:
            last_error = e
            logger.warning("Rename %s -> %s failed (attempt %d/%d): %s", source, live, attempt, attempts, e)
            if attempt < attempts and cancel.wait(delay):
                raise OperationCancelled(f"cancelled while finalizing {live.name}") from e

    raise FileSystemError(
        f"cannot finalize {live}: {last_error}",
        details={"source": source, "target": live},
    )


def make_executable(path: Path) -> None:
    """Add execute bits for user/group/other (POSIX only)."""
    if os.name == "nt" or not path.is_file():
        return
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
