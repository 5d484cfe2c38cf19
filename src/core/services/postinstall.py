"""
Post-install fixups run after a successful patch chain.

Hooks run in order before the version marker is written, so a failing
hook leaves the variant "not installed". Each hook decides for itself
whether it applies to the current platform.
"""

from __future__ import annotations

import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from src.core.config.paths import AppPaths
from src.core.errors import FileSystemError
from src.core.models.progress import Stage
from src.core.reliability.cancellation import CancelToken, ensure_token
from src.core.services.archive import extract_archive, make_executable, remove_tree
from src.core.services.download import DownloadManager
from src.core.services.progress import Reporter, Scaler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallContext:
    """What a hook knows about the install it follows."""

    branch: str
    version: int
    install_dir: Path
    client_path: Path
    os_name: str


class PostInstallHook(ABC):
    """One platform-specific fixup."""

    name: str = "hook"

    @abstractmethod
    def applies(self, context: InstallContext) -> bool:
        """Whether this hook should run for ``context``."""

    @abstractmethod
    def run(self, context: InstallContext, reporter: Reporter, cancel: CancelToken | None = None) -> None:
        """Perform the fixup. Raise a ``DeployError`` on failure."""


class PermissionFixup(PostInstallHook):
    """Restore the execute bit on the client binary (POSIX)."""

    name = "permissions"

    def applies(self, context: InstallContext) -> bool:
        return context.os_name != "windows"

    def run(self, context: InstallContext, reporter: Reporter, cancel: CancelToken | None = None) -> None:
        try:
            make_executable(context.client_path)
        except OSError as e:
            raise FileSystemError(
                f"cannot make {context.client_path.name} executable: {e}",
                details={"path": context.client_path},
            ) from e
        logger.debug("Execute bit restored on %s", context.client_path)


class OverlayFixup(PostInstallHook):
    """Download an overlay archive and copy it over the install tree.

    Only configured platforms get the overlay; an empty URL disables it.
    """

    name = "overlay"

    def __init__(
        self,
        paths: AppPaths,
        downloads: DownloadManager,
        url: str,
        platforms: list[str],
    ):
        self._paths = paths
        self._downloads = downloads
        self._url = url
        self._platforms = set(platforms)

    def applies(self, context: InstallContext) -> bool:
        return bool(self._url) and context.os_name in self._platforms

    def run(self, context: InstallContext, reporter: Reporter, cancel: CancelToken | None = None) -> None:
        cancel = ensure_token(cancel)
        archive = self._paths.cache_dir / "overlay.zip"
        unpacked = self._paths.cache_dir / "overlay-extract"

        reporter.report(Stage.ONLINE_FIX, 0, "Downloading overlay...")
        self._downloads.download(
            self._url, archive, Scaler(reporter, 0, 60),
            stage=Stage.ONLINE_FIX, file_name=archive.name, cancel=cancel,
        )
        cancel.raise_if_cancelled()

        reporter.report(Stage.ONLINE_FIX, 60, "Extracting overlay...")
        remove_tree(unpacked)
        try:
            extract_archive(archive, unpacked)
            reporter.report(Stage.ONLINE_FIX, 80, "Applying overlay...")
            shutil.copytree(unpacked, context.install_dir, dirs_exist_ok=True)
        except OSError as e:
            raise FileSystemError(
                f"cannot apply overlay to {context.install_dir}: {e}",
                details={"path": context.install_dir},
            ) from e
        finally:
            remove_tree(unpacked)
            archive.unlink(missing_ok=True)

        reporter.report(Stage.ONLINE_FIX, 100, "Overlay applied")
        logger.info("Overlay applied to %s", context.install_dir)
