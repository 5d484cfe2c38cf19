"""
Wiring — build a ready-to-use coordinator from an ``EngineConfig``.

Every collaborator is constructed here and injected, so nothing in the
engine holds module-level caches or locks. Tests build their own graph
with fakes instead of calling this.
"""

from __future__ import annotations

from src.adapters.base import PatchApplier
from src.adapters.http.transport import HttpTransport, UrllibTransport
from src.adapters.patching.butler import ButlerApplier
from src.adapters.shell.command import Runner, run_command
from src.core.config.paths import AppPaths
from src.core.config.schema import EngineConfig
from src.core.services.download import DownloadManager
from src.core.services.install import InstallCoordinator
from src.core.services.patching import PatchPipeline
from src.core.services.postinstall import OverlayFixup, PermissionFixup, PostInstallHook
from src.core.services.progress import ProgressReporter, ProgressSink
from src.core.services.runtime import RuntimeProvisioner
from src.core.services.tools import ToolProvisioner
from src.core.services.versions import VersionResolver


def build_coordinator(
    config: EngineConfig,
    sink: ProgressSink | None = None,
    *,
    paths: AppPaths | None = None,
    transport: HttpTransport | None = None,
    runner: Runner = run_command,
    applier: PatchApplier | None = None,
) -> InstallCoordinator:
    """Assemble the full engine for ``config``."""
    paths = paths or AppPaths.from_config(config)
    transport = transport or UrllibTransport(config.endpoints.user_agent)
    downloads = DownloadManager.from_config(config.download, transport, os_name=paths.os_name)

    resolver = VersionResolver(
        transport, config.discovery, config.endpoints,
        os_name=paths.os_name, arch=paths.arch,
    )
    runtime = RuntimeProvisioner(paths, transport, downloads, config.runtime, config.endpoints, runner=runner)
    tools = ToolProvisioner(paths, downloads, config.tool, config.endpoints, runner=runner)
    pipeline = PatchPipeline(
        paths, transport, downloads,
        applier or ButlerApplier(paths.tool_binary, runner=runner),
        endpoints=config.endpoints, install=config.install, tool=config.tool,
    )
    hooks: list[PostInstallHook] = [
        PermissionFixup(),
        OverlayFixup(paths, downloads, config.endpoints.overlay_url, config.install.overlay_platforms),
    ]
    return InstallCoordinator(
        paths, resolver, runtime, tools, pipeline,
        hooks=hooks, reporter=ProgressReporter(sink),
    )
