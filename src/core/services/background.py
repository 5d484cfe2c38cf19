"""
Background tasks — named daemon threads started alongside the client.

Two tasks run at startup: a silent update check and a cache cleanup.
Neither is allowed to surface as a startup failure. Each task records
its result or error and sets a completion event, so callers and tests
can ``join`` it and inspect what happened.

Design decisions
────────────────
1. **Daemon threads**: the process never waits on them at exit.
2. **Errors captured, not raised**: a failing task logs and stores its
   exception on ``BackgroundTask.error``.
3. **Network failures are normal**: the update check treats offline as
   "no update" (``check_for_update`` already returns None).
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable

from src.core.config.paths import AppPaths
from src.core.services.archive import remove_tree
from src.core.services.download import PART_SUFFIX
from src.core.services.install import InstallCoordinator, UpdateStatus

logger = logging.getLogger(__name__)

STALE_PART_AGE_S = 7 * 24 * 3600.0
"""Partial downloads untouched for a week are discarded."""

STALE_STAGING_AGE_S = 3600.0
"""Younger staging directories may still belong to a running apply."""


class BackgroundTask:
    """A named daemon thread with a completion signal."""

    def __init__(self, name: str, fn: Callable[[], Any]):
        self.name = name
        self._fn = fn
        self._done = threading.Event()
        self.result: Any = None
        self.error: BaseException | None = None
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> BackgroundTask:
        self._thread.start()
        logger.debug("Background task %s started", self.name)
        return self

    def _run(self) -> None:
        try:
            self.result = self._fn()
        except Exception as e:
            self.error = e
            logger.warning("Background task %s failed: %s", self.name, e)
        finally:
            self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for completion; True if the task finished."""
        return self._done.wait(timeout)


def start_update_check(
    coordinator: InstallCoordinator,
    branch: str,
    on_update: Callable[[UpdateStatus], None] | None = None,
) -> BackgroundTask:
    """Silently check ``branch`` for a newer version."""

    def check() -> UpdateStatus | None:
        status = coordinator.check_for_update(branch)
        if status is not None and status.available and on_update is not None:
            on_update(status)
        return status

    return BackgroundTask(f"update-check-{branch}", check).start()


def cleanup_cache(
    paths: AppPaths,
    *,
    coordinator: InstallCoordinator | None = None,
    max_part_age: float = STALE_PART_AGE_S,
    max_staging_age: float = STALE_STAGING_AGE_S,
    now: float | None = None,
) -> list[Path]:
    """Remove orphaned staging dirs and stale ``.part`` files.

    Staging is left alone entirely while ``coordinator`` reports an
    install in progress, and entries younger than ``max_staging_age``
    are kept either way.

    Returns:
        The paths that were removed.
    """
    now = time.time() if now is None else now
    removed: list[Path] = []

    if coordinator is not None and coordinator.installing:
        logger.debug("Install in progress; skipping staging cleanup")
    elif paths.staging_root.is_dir():
        for entry in paths.staging_root.iterdir():
            if not _older_than(entry, max_staging_age, now):
                continue
            if entry.is_dir():
                remove_tree(entry)
            else:
                entry.unlink(missing_ok=True)
            removed.append(entry)

    if paths.cache_dir.is_dir():
        for part in paths.cache_dir.rglob(f"*{PART_SUFFIX}"):
            if _older_than(part, max_part_age, now):
                part.unlink(missing_ok=True)
                removed.append(part)

    if removed:
        logger.info("Cache cleanup removed %d entries", len(removed))
    return removed


def _older_than(path: Path, age: float, now: float) -> bool:
    try:
        return now - path.stat().st_mtime >= age
    except FileNotFoundError:
        return False


def start_cache_cleanup(
    paths: AppPaths,
    coordinator: InstallCoordinator | None = None,
    **kwargs: Any,
) -> BackgroundTask:
    return BackgroundTask(
        "cache-cleanup", lambda: cleanup_cache(paths, coordinator=coordinator, **kwargs),
    ).start()
