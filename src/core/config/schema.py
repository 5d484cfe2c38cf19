"""
Engine configuration schema.

Every tunable the engine uses lives here with its reference default,
so an empty ``deploy.yml`` (or none at all) yields a working client.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field


class EndpointsConfig(BaseModel):
    """Remote origins."""

    # Legacy per-version probe: {base}/{os}/{arch}/{branch}/{from}/{version}.pwr
    patch_base_url: str = "https://game-patches.hytale.com/patches"
    patch_extension: str = ".pwr"
    patch_steps_url: str = "https://api.hylauncher.fun/v1/pwr"
    runtime_manifest_url: str = "https://launcher.hytale.com/version/{branch}/jre.json"
    tool_download_url: str = "https://broth.itch.zone/butler/{os}-{arch}/LATEST/archive/default"
    overlay_url: str = ""           # optional post-install overlay archive
    user_agent: str = "patch-deploy/1.0"


class DiscoveryConfig(BaseModel):
    """Adaptive version probing."""

    checkpoints: list[int] = Field(default_factory=lambda: [1, 5, 10, 25])
    max_step: int = 1000            # exponential search stops doubling past this
    probe_delay: float = 0.1        # seconds between probes
    probe_timeout: float = 10.0
    cache_ttl: float = 300.0        # 5 minutes
    list_batch_size: int = 8        # parallel probes per batch when listing


class DownloadConfig(BaseModel):
    """Resumable download manager."""

    max_attempts: int = 5
    base_delay: float = 3.0
    max_delay: float = 60.0
    progress_interval: float = 0.2
    chunk_size: int = 64 * 1024
    timeout: float = 60.0           # per-socket-operation timeout


class RuntimeConfig(BaseModel):
    """Managed language runtime."""

    executable: str = "bin/java"
    self_check_args: list[str] = Field(default_factory=lambda: ["-version"])
    self_check_timeout: float = 30.0
    finalize_attempts: int = 5
    finalize_delay: float = 2.0


class ToolConfig(BaseModel):
    """External diff-apply tool."""

    name: str = "butler"
    self_check_args: list[str] = Field(default_factory=lambda: ["--version"])
    self_check_timeout: float = 30.0
    apply_timeout: float | None = None


class InstallConfig(BaseModel):
    """Install tree layout and patch behaviour."""

    client_binary: dict[str, str] = Field(
        default_factory=lambda: {
            "linux": "Client/GameClient",
            "windows": "Client/GameClient.exe",
            "darwin": "Client/Game.app/Contents/MacOS/GameClient",
        }
    )
    keep_patch_cache: bool = False
    # Fall back to a single legacy {from}/{to}.pwr patch when the steps endpoint cannot bridge the gap
    direct_patch_fallback: bool = True
    steps_timeout: float = 30.0
    # Substrings (lower-case) in applier output meaning "tree was modified out-of-band"
    signature_mismatch_markers: list[str] = Field(
        default_factory=lambda: [
            "signature mismatch",
            "hash mismatch",
            "does not match signature",
            "expected hash",
            "verification failed",
            "healing",
        ]
    )
    overlay_platforms: list[str] = Field(default_factory=lambda: ["windows"])


class EngineConfig(BaseModel):
    """Root configuration — loaded from deploy.yml."""

    app_dir: Path | None = None
    endpoints: EndpointsConfig = Field(default_factory=EndpointsConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    download: DownloadConfig = Field(default_factory=DownloadConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    tool: ToolConfig = Field(default_factory=ToolConfig)
    install: InstallConfig = Field(default_factory=InstallConfig)
