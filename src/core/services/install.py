"""
Install coordinator — the single entry point for "make branch X ready".

``ensure_installed`` is single-flight: a second call while one is
running is rejected with ``InstallInProgressError`` (never queued).

Flow:
    1. Verify what is on disk (runtime, tool, client binary, marker).
    2. Resolve the target version per policy. Pinned passes through
       (checked against the server only when not already installed);
       Latest resolves once; Auto resolves but falls back to the
       installed version when offline.
    3. Fast path: verification passed and the marker equals the target.
    4. Provision runtime and tool in parallel worker threads.
    5. Clear the marker, run the patch chain from the recorded version.
    6. Check the client binary, run post-install hooks.
    7. Write the marker and report Complete.

The marker is only written after steps 5 and 6 fully succeed, so no
failure leaves a variant looking installed.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

from src.core.config.paths import AppPaths, check_segment
from src.core.errors import DeployError, FileSystemError, InstallInProgressError, NetworkError, ValidationError
from src.core.models.progress import Stage
from src.core.models.release import NOT_INSTALLED, InstallRequest, PolicyKind, ResolvedVersion
from src.core.persistence.version_marker import clear_marker, read_version, write_version
from src.core.reliability.cancellation import CancelToken, ensure_token
from src.core.services.archive import reset_directory
from src.core.services.patching import PatchPipeline
from src.core.services.postinstall import InstallContext, PostInstallHook
from src.core.services.progress import ProgressReporter
from src.core.services.runtime import RuntimeProvisioner
from src.core.services.tools import ToolProvisioner
from src.core.services.versions import VersionResolver

logger = logging.getLogger(__name__)


class InstallGuard:
    """Process-wide "installing" flag behind a mutex."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._installing = False

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._installing

    @contextmanager
    def acquire(self) -> Iterator[None]:
        with self._lock:
            if self._installing:
                raise InstallInProgressError()
            self._installing = True
        try:
            yield
        finally:
            with self._lock:
                self._installing = False


@dataclass
class InstallationReport:
    """What ``verify_installation`` found for one variant."""

    branch: str
    variant: str
    installed_version: int
    runtime_ok: bool
    tool_ok: bool
    client_ok: bool
    client_path: Path
    runtime_version: str | None = None

    @property
    def ok(self) -> bool:
        return (
            self.installed_version != NOT_INSTALLED
            and self.runtime_ok
            and self.tool_ok
            and self.client_ok
        )

    def to_dict(self) -> dict:
        return {
            "branch": self.branch,
            "variant": self.variant,
            "installed_version": self.installed_version,
            "runtime": self.runtime_ok,
            "runtime_version": self.runtime_version,
            "tool": self.tool_ok,
            "client": self.client_ok,
            "client_path": str(self.client_path),
            "ok": self.ok,
        }


@dataclass
class UpdateStatus:
    """Result of a passive update check."""

    branch: str
    installed_version: int
    latest_version: int

    @property
    def available(self) -> bool:
        return self.latest_version > self.installed_version


class InstallCoordinator:
    """Compose resolver, provisioners and pipeline into one install call."""

    def __init__(
        self,
        paths: AppPaths,
        resolver: VersionResolver,
        runtime: RuntimeProvisioner,
        tools: ToolProvisioner,
        pipeline: PatchPipeline,
        *,
        hooks: Iterable[PostInstallHook] = (),
        reporter: ProgressReporter | None = None,
        guard: InstallGuard | None = None,
    ):
        self._paths = paths
        self._resolver = resolver
        self._runtime = runtime
        self._tools = tools
        self._pipeline = pipeline
        self._hooks = list(hooks)
        self._reporter = reporter or ProgressReporter()
        self._guard = guard or InstallGuard()

    @property
    def paths(self) -> AppPaths:
        return self._paths

    @property
    def resolver(self) -> VersionResolver:
        return self._resolver

    @property
    def reporter(self) -> ProgressReporter:
        return self._reporter

    @property
    def installing(self) -> bool:
        return self._guard.busy

    # ── Local state ─────────────────────────────────────────────

    def installed_version(self, branch: str, variant: str = "latest") -> int:
        """Recorded version of a variant, only if its client binary exists."""
        if not self._paths.client_path(branch, variant).is_file():
            return NOT_INSTALLED
        return read_version(self._paths.marker_file(branch, variant))

    def verify_installation(
        self,
        branch: str,
        variant: str = "latest",
        cancel: CancelToken | None = None,
    ) -> InstallationReport:
        """Check runtime, tool, client binary and marker for one variant."""
        client = self._paths.client_path(branch, variant)
        client_ok = client.is_file()
        runtime = self._runtime.status(cancel)
        return InstallationReport(
            branch=branch,
            variant=variant,
            installed_version=read_version(self._paths.marker_file(branch, variant)) if client_ok else NOT_INSTALLED,
            runtime_ok=runtime.functional,
            tool_ok=self._tools.is_functional(cancel),
            client_ok=client_ok,
            client_path=client,
            runtime_version=runtime.installed_version,
        )

    # ── Install ─────────────────────────────────────────────────

    def ensure_installed(self, request: InstallRequest, cancel: CancelToken | None = None) -> ResolvedVersion:
        """Bring ``request.branch`` to the version its policy selects.

        Raises:
            InstallInProgressError: Another call is running.
            DeployError: Any other failure (network, integrity, tool...).
        """
        with self._guard.acquire():
            try:
                return self._ensure_installed(request, ensure_token(cancel))
            except DeployError as e:
                logger.error("Install of %s (%s) failed: %s", request.branch, request.policy, e)
                raise

    def _ensure_installed(self, request: InstallRequest, cancel: CancelToken) -> ResolvedVersion:
        branch, policy = request.branch, request.policy
        if policy.kind == PolicyKind.PINNED and (
            not isinstance(policy.version, int) or isinstance(policy.version, bool) or policy.version <= 0
        ):
            raise ValidationError(f"invalid pinned version {policy.version!r}", details={"branch": branch})

        variant = policy.variant
        install_dir = self._paths.game_dir(branch, variant)
        reporter = self._reporter
        try:
            self._paths.ensure_base_dirs()
        except OSError as e:
            raise FileSystemError(f"cannot create app directories under {self._paths.root}: {e}") from e

        reporter.report(Stage.VERIFY, 0, "Verifying installation...")
        report = self.verify_installation(branch, variant, cancel)
        installed = report.installed_version
        reporter.report(Stage.VERIFY, 100, f"Installed version: {installed or 'none'}")

        target = self._resolve_target(branch, policy.kind, policy.version, report, cancel)

        if report.ok and installed == target:
            logger.info("%s/%s already at %d", branch, variant, target)
            reporter.report(Stage.COMPLETE, 100, "Game is up to date")
            return ResolvedVersion(
                branch=branch, version=target, variant=variant,
                install_dir=install_dir, previous_version=installed, changed=False,
            )

        self._provision(branch, cancel)

        from_version = installed
        if from_version == NOT_INSTALLED or from_version > target:
            # Fresh install (or server rolled back): start from an empty tree
            from_version = NOT_INSTALLED
            reset_directory(install_dir)

        marker = self._paths.marker_file(branch, variant)
        clear_marker(marker)

        if from_version == NOT_INSTALLED:
            reporter.report(Stage.DOWNLOAD, 0, f"Installing version {target}...")
        else:
            reporter.report(Stage.DOWNLOAD, 0, f"Updating from version {from_version} to {target}...")
        self._pipeline.apply_chain(branch, from_version, target, install_dir, reporter, cancel)

        client = self._paths.client_path(branch, variant)
        if not client.is_file():
            raise FileSystemError(
                f"installation incomplete: client executable not found at {client}",
                details={"branch": branch, "version": target, "path": client},
            )

        self._run_hooks(
            InstallContext(
                branch=branch, version=target, install_dir=install_dir,
                client_path=client, os_name=self._paths.os_name,
            ),
            cancel,
        )

        write_version(marker, target)
        reporter.report(Stage.COMPLETE, 100, f"Installed version {target}")
        logger.info("%s/%s installed at version %d (was %d)", branch, variant, target, installed)
        return ResolvedVersion(
            branch=branch, version=target, variant=variant,
            install_dir=install_dir, previous_version=installed, changed=True,
        )

    def _resolve_target(
        self,
        branch: str,
        kind: PolicyKind,
        pinned: int | None,
        report: InstallationReport,
        cancel: CancelToken,
    ) -> int:
        reporter = self._reporter
        if kind == PolicyKind.PINNED:
            if report.ok and report.installed_version == pinned:
                return pinned
            reporter.report(Stage.VERSION, 0, f"Verifying version {pinned}...")
            self._resolver.verify_version_exists(branch, pinned, cancel)
            reporter.report(Stage.VERSION, 100, f"Version {pinned} available")
            return pinned

        reporter.report(Stage.VERSION, 0, "Checking for game updates...")
        try:
            latest = self._resolver.find_latest(branch, cancel)
        except NetworkError as e:
            if kind == PolicyKind.AUTO and report.ok:
                logger.warning("Cannot check for updates (%s); keeping version %d", e, report.installed_version)
                reporter.report(Stage.VERSION, 100, "Offline; using installed version")
                return report.installed_version
            raise
        reporter.report(Stage.VERSION, 100, f"Found version {latest}")
        return latest

    def _provision(self, branch: str, cancel: CancelToken) -> None:
        """Runtime and tool in parallel; the first error (runtime first) wins."""
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="provision") as pool:
            runtime = pool.submit(self._runtime.ensure_runtime, branch, self._reporter, cancel)
            tool = pool.submit(self._tools.ensure_tool, self._reporter, cancel)
            errors = []
            for future in (runtime, tool):
                try:
                    future.result()
                except DeployError as e:
                    errors.append(e)
        if errors:
            if len(errors) > 1:
                logger.error("Tool provisioning also failed: %s", errors[1])
            raise errors[0]

    def _run_hooks(self, context: InstallContext, cancel: CancelToken) -> None:
        for hook in self._hooks:
            if not hook.applies(context):
                continue
            cancel.raise_if_cancelled()
            logger.info("Running post-install hook %s", hook.name)
            hook.run(context, self._reporter, cancel)

    # ── Passive checks ──────────────────────────────────────────

    def check_for_update(self, branch: str, cancel: CancelToken | None = None) -> UpdateStatus | None:
        """Compare the Latest variant against the server.

        Network failures are expected while offline and return None.
        """
        check_segment("branch", branch)
        try:
            latest = self._resolver.find_latest(branch, cancel)
        except NetworkError as e:
            logger.debug("Update check for %s skipped: %s", branch, e)
            return None
        status = UpdateStatus(branch=branch, installed_version=self.installed_version(branch), latest_version=latest)
        if status.available:
            logger.info("Update available for %s: %d → %d", branch, status.installed_version, latest)
        return status
