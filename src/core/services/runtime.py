"""
Runtime provisioner — keep the managed language runtime installed.

The runtime manifest (``jre.json``) names, per OS/arch, an archive URL
with its checksum plus a version string. ``ensure_runtime`` is a no-op
when the live runtime reports that version and passes its self-check;
otherwise it downloads the archive into the cache, verifies it,
extracts to a temporary sibling, flattens a single wrapper folder and
swaps the result into place.

Progress (stage RUNTIME): download 0–90, verify 92, extract 95,
finalize 98, done 100.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError as SchemaError

from src.adapters.http.transport import HttpTransport, get_json
from src.adapters.shell.command import Runner, is_functional, run_command
from src.core.config.paths import AppPaths
from src.core.config.schema import EndpointsConfig, RuntimeConfig
from src.core.errors import ExternalToolError, NetworkError, ValidationError
from src.core.models.progress import Stage
from src.core.models.release import RuntimeManifest
from src.core.persistence.version_marker import read_text_marker, write_text_marker
from src.core.reliability.cancellation import CancelToken, ensure_token
from src.core.services.archive import extract_archive, flatten_single_root, make_executable, remove_tree, swap_directory
from src.core.services.download import DownloadManager
from src.core.services.integrity import cached_file_valid, verify_sha256
from src.core.services.progress import NullReporter, Reporter, Scaler

logger = logging.getLogger(__name__)


@dataclass
class RuntimeStatus:
    """What is currently on disk."""

    installed_version: str | None
    functional: bool
    binary: Path


class RuntimeProvisioner:
    """Ensure the managed runtime is present and functional."""

    def __init__(
        self,
        paths: AppPaths,
        transport: HttpTransport,
        downloads: DownloadManager,
        config: RuntimeConfig,
        endpoints: EndpointsConfig,
        *,
        runner: Runner = run_command,
        timeout: float | None = 30.0,
    ):
        self._paths = paths
        self._transport = transport
        self._downloads = downloads
        self._config = config
        self._endpoints = endpoints
        self._runner = runner
        self._timeout = timeout

    def manifest_url(self, branch: str) -> str:
        return self._endpoints.runtime_manifest_url.format(branch=branch)

    def fetch_manifest(self, branch: str, cancel: CancelToken | None = None) -> RuntimeManifest:
        ensure_token(cancel).raise_if_cancelled()
        url = self.manifest_url(branch)
        data = get_json(self._transport, url, timeout=self._timeout)
        try:
            return RuntimeManifest.model_validate(data)
        except SchemaError as e:
            raise NetworkError(f"malformed runtime manifest from {url}: {e}", details={"url": url}) from e

    def installed_version(self) -> str | None:
        return read_text_marker(self._paths.runtime_version_file)

    def is_functional(self, cancel: CancelToken | None = None) -> bool:
        return is_functional(
            self._paths.runtime_binary,
            self._config.self_check_args,
            runner=self._runner,
            timeout=self._config.self_check_timeout,
            cancel=cancel,
        )

    def status(self, cancel: CancelToken | None = None) -> RuntimeStatus:
        return RuntimeStatus(
            installed_version=self.installed_version(),
            functional=self.is_functional(cancel),
            binary=self._paths.runtime_binary,
        )

    def ensure_runtime(
        self,
        branch: str,
        reporter: Reporter | None = None,
        cancel: CancelToken | None = None,
    ) -> str:
        """Install or repair the runtime for ``branch``'s manifest.

        Returns:
            The runtime version now installed.

        Raises:
            NetworkError: Manifest or archive unreachable.
            IntegrityError: Archive checksum mismatch (cached file removed).
            ValidationError: No runtime published for this OS/arch.
            FileSystemError: Extraction or swap failed.
            ExternalToolError: The installed runtime fails its self-check.
            OperationCancelled: Token fired.
        """
        reporter = reporter or NullReporter()
        cancel = ensure_token(cancel)
        reporter.report(Stage.RUNTIME, 0, "Checking runtime")

        manifest = self.fetch_manifest(branch, cancel)
        installed = self.installed_version()
        if installed == manifest.version and self.is_functional(cancel):
            logger.info("Runtime %s already installed and functional", installed)
            reporter.report(Stage.RUNTIME, 100, f"Runtime {installed} ready")
            return installed

        if installed:
            logger.info("Runtime %s needs replacement (manifest %s)", installed, manifest.version)
        else:
            logger.info("Runtime not installed; installing %s", manifest.version)
        self._install(manifest, reporter, cancel)
        reporter.report(Stage.RUNTIME, 100, f"Runtime {manifest.version} installed")
        return manifest.version

    def _install(self, manifest: RuntimeManifest, reporter: Reporter, cancel: CancelToken) -> None:
        os_name, arch = self._paths.os_name, self._paths.arch
        asset = manifest.asset_for(os_name, arch)
        if asset is None:
            raise ValidationError(
                f"no runtime published for {os_name}/{arch}",
                details={"version": manifest.version, "os": os_name, "arch": arch},
            )

        cache_file = self._paths.cache_dir / asset.file_name
        if cached_file_valid(cache_file, asset.sha256):
            reporter.report(Stage.RUNTIME, 90, "Runtime archive cached")
        else:
            self._downloads.download(
                asset.url, cache_file, Scaler(reporter, 0, 90),
                stage=Stage.RUNTIME, file_name=asset.file_name, cancel=cancel,
            )
            reporter.report(Stage.RUNTIME, 92, "Verifying runtime integrity")
            if asset.sha256:
                verify_sha256(cache_file, asset.sha256)

        cancel.raise_if_cancelled()
        root = self._paths.runtime_root
        temp_dir = root / f"tmp-{manifest.version}"
        remove_tree(temp_dir)
        reporter.report(Stage.RUNTIME, 95, "Extracting runtime")
        try:
            extract_archive(cache_file, temp_dir)
            flatten_single_root(temp_dir)

            reporter.report(Stage.RUNTIME, 98, "Finalizing runtime installation")
            swap_directory(
                temp_dir, self._paths.runtime_dir,
                attempts=self._config.finalize_attempts,
                delay=self._config.finalize_delay,
                cancel=cancel,
            )
        finally:
            remove_tree(temp_dir)

        make_executable(self._paths.runtime_binary)
        try:
            cache_file.unlink(missing_ok=True)
        except OSError as e:
            logger.debug("Cannot remove cached runtime archive %s: %s", cache_file, e)

        if not self.is_functional(cancel):
            raise ExternalToolError(
                f"runtime {manifest.version} installed but {self._paths.runtime_binary.name} is not functional",
                details={"path": self._paths.runtime_binary},
            )
        write_text_marker(self._paths.runtime_version_file, manifest.version)
        logger.info("Runtime %s installed at %s", manifest.version, self._paths.runtime_dir)

