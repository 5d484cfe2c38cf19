"""
Tool provisioner — keep the external diff-apply tool installed.

The tool ships as a per-OS/arch zip (darwin builds are amd64 only and
run under translation on arm64). A present binary that passes its
``--version`` self-check is left alone; anything else is wiped and
reinstalled.

Progress (stage TOOL): download 0–70, extract 80, done 100.
"""

from __future__ import annotations

import logging
from pathlib import Path

from src.adapters.shell.command import Runner, is_functional, run_command
from src.core.config.paths import AppPaths
from src.core.config.schema import EndpointsConfig, ToolConfig
from src.core.errors import ExternalToolError
from src.core.models.progress import Stage
from src.core.reliability.cancellation import CancelToken, ensure_token
from src.core.services.archive import extract_archive, make_executable, reset_directory
from src.core.services.download import DownloadManager
from src.core.services.progress import NullReporter, Reporter, Scaler

logger = logging.getLogger(__name__)


def tool_download_url(template: str, os_name: str, arch: str) -> str:
    if os_name == "darwin":
        arch = "amd64"
    return template.format(os=os_name, arch=arch)


class ToolProvisioner:
    """Ensure the diff-apply tool binary is present and functional."""

    def __init__(
        self,
        paths: AppPaths,
        downloads: DownloadManager,
        config: ToolConfig,
        endpoints: EndpointsConfig,
        *,
        runner: Runner = run_command,
    ):
        self._paths = paths
        self._downloads = downloads
        self._config = config
        self._endpoints = endpoints
        self._runner = runner

    @property
    def binary(self) -> Path:
        return self._paths.tool_binary

    def download_url(self) -> str:
        return tool_download_url(self._endpoints.tool_download_url, self._paths.os_name, self._paths.arch)

    def is_functional(self, cancel: CancelToken | None = None) -> bool:
        return is_functional(
            self._paths.tool_binary,
            self._config.self_check_args,
            runner=self._runner,
            timeout=self._config.self_check_timeout,
            cancel=cancel,
        )

    def ensure_tool(self, reporter: Reporter | None = None, cancel: CancelToken | None = None) -> None:
        """Install the tool unless a functional copy is already present.

        Raises:
            NetworkError: Archive unreachable.
            FileSystemError: Extraction failed.
            ExternalToolError: The fresh install fails its self-check.
            OperationCancelled: Token fired.
        """
        reporter = reporter or NullReporter()
        cancel = ensure_token(cancel)
        if self.is_functional(cancel):
            logger.debug("%s present and functional", self._config.name)
            reporter.report(Stage.TOOL, 100, f"{self._config.name} ready")
            return

        logger.info("Installing %s into %s", self._config.name, self._paths.tool_dir)
        tool_dir = self._paths.tool_dir
        reset_directory(tool_dir)
        archive = self._paths.cache_dir / f"{self._config.name}.zip"

        reporter.report(Stage.TOOL, 0, f"Downloading {self._config.name}...")
        self._downloads.download(
            self.download_url(), archive, Scaler(reporter, 0, 70),
            stage=Stage.TOOL, file_name=archive.name, cancel=cancel,
        )

        reporter.report(Stage.TOOL, 80, f"Extracting {archive.name}")
        try:
            extract_archive(archive, tool_dir)
        finally:
            archive.unlink(missing_ok=True)
        make_executable(self._paths.tool_binary)

        if not self.is_functional(cancel):
            raise ExternalToolError(
                f"{self._config.name} installed but fails its self-check",
                details={"path": self._paths.tool_binary},
            )
        reporter.report(Stage.TOOL, 100, f"{self._config.name} installed")
        logger.info("%s installed at %s", self._config.name, self._paths.tool_binary)
