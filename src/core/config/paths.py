"""
On-disk layout and platform identifiers.

    <app_dir>/
      cache/                      downloads, patch files, staging
      logs/                       diagnostic logs
      shared/runtime/latest/      managed runtime (live)
      shared/runtime/latest.version
      shared/tools/<tool>/        external diff-apply tool
      shared/games/<branch>/<variant>/          install tree
      shared/games/<branch>/<variant>.version   version marker

Markers and staging live outside the install tree so the diff-apply
tool never sees them as out-of-band modifications.
"""

from __future__ import annotations

import os
import platform
import re
import sys
from dataclasses import dataclass
from pathlib import Path

from src.core.config.schema import EngineConfig
from src.core.errors import ValidationError

# A single path segment: no separators, no leading dot.
_SEGMENT_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")

_ARCH_MAP = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def current_os() -> str:
    """``windows``, ``darwin``, ``linux`` or ``unknown``."""
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "darwin"
    if sys.platform.startswith("linux"):
        return "linux"
    return "unknown"


def current_arch() -> str:
    """``amd64``, ``arm64`` or ``unknown``."""
    return _ARCH_MAP.get(platform.machine().lower(), "unknown")


def default_app_dir(os_name: str | None = None) -> Path:
    """Per-OS default install root."""
    home = Path.home()
    os_name = os_name or current_os()
    if os_name == "windows":
        base = os.environ.get("LOCALAPPDATA")
        return Path(base) / "PatchDeploy" if base else home / "AppData" / "Local" / "PatchDeploy"
    if os_name == "darwin":
        return home / "Library" / "Application Support" / "PatchDeploy"
    if os_name == "linux":
        return home / ".patchdeploy"
    return home / "PatchDeploy"


def check_segment(field: str, value: str) -> str:
    """Reject branch and variant names that are not a single safe path segment."""
    if not isinstance(value, str) or not _SEGMENT_RE.fullmatch(value):
        raise ValidationError(f"invalid {field} name {value!r}", details={field: value})
    return value


def executable_name(name: str, os_name: str | None = None) -> str:
    """Append ``.exe`` on Windows."""
    if (os_name or current_os()) == "windows" and not name.lower().endswith(".exe"):
        return name + ".exe"
    return name


@dataclass(frozen=True)
class AppPaths:
    """Resolved filesystem layout for one app directory."""

    root: Path
    os_name: str
    arch: str
    tool_name: str = "butler"
    runtime_executable: str = "bin/java"
    client_binary: str = "Client/GameClient"

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        os_name: str | None = None,
        arch: str | None = None,
    ) -> AppPaths:
        os_name = os_name or current_os()
        client = config.install.client_binary.get(
            os_name, executable_name("Client/GameClient", os_name)
        )
        return cls(
            root=Path(config.app_dir) if config.app_dir else default_app_dir(os_name),
            os_name=os_name,
            arch=arch or current_arch(),
            tool_name=config.tool.name,
            runtime_executable=config.runtime.executable,
            client_binary=client,
        )

    # ── Shared directories ──────────────────────────────────────

    @property
    def cache_dir(self) -> Path:
        return self.root / "cache"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def patch_cache_dir(self) -> Path:
        return self.cache_dir / "patches"

    @property
    def staging_root(self) -> Path:
        return self.cache_dir / "staging"

    # ── Runtime ─────────────────────────────────────────────────

    @property
    def runtime_root(self) -> Path:
        return self.root / "shared" / "runtime"

    @property
    def runtime_dir(self) -> Path:
        return self.runtime_root / "latest"

    @property
    def runtime_version_file(self) -> Path:
        return self.runtime_root / "latest.version"

    @property
    def runtime_binary(self) -> Path:
        return self.runtime_dir / executable_name(self.runtime_executable, self.os_name)

    # ── External tool ───────────────────────────────────────────

    @property
    def tool_dir(self) -> Path:
        return self.root / "shared" / "tools" / self.tool_name

    @property
    def tool_binary(self) -> Path:
        return self.tool_dir / executable_name(self.tool_name, self.os_name)

    # ── Install trees ───────────────────────────────────────────

    @property
    def games_root(self) -> Path:
        return self.root / "shared" / "games"

    def game_dir(self, branch: str, variant: str) -> Path:
        return self._games_path(branch, variant, variant)

    def marker_file(self, branch: str, variant: str) -> Path:
        return self._games_path(branch, variant, f"{variant}.version")

    def _games_path(self, branch: str, variant: str, leaf: str) -> Path:
        check_segment("branch", branch)
        check_segment("variant", variant)
        path = self.games_root / branch / leaf
        if not path.resolve().is_relative_to(self.games_root.resolve()):
            raise ValidationError(
                f"install path escapes {self.games_root}", details={"branch": branch, "variant": variant},
            )
        return path

    def client_path(self, branch: str, variant: str) -> Path:
        return self.game_dir(branch, variant).joinpath(*self.client_binary.split("/"))

    def ensure_base_dirs(self) -> None:
        for path in (self.root, self.cache_dir, self.logs_dir, self.runtime_root, self.tool_dir.parent):
            path.mkdir(parents=True, exist_ok=True)
