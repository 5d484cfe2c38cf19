"""
Release models — assets, patch steps, runtime manifests, install requests.

These are the value objects exchanged between the engine and its
callers. Remote JSON payloads are validated into them at the edge so
the rest of the engine only sees typed data.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

# Version 0 means "not installed".
NOT_INSTALLED = 0


class Asset(BaseModel):
    """A downloadable artifact with its expected checksum."""

    model_config = ConfigDict(frozen=True)

    url: str
    sha256: str = ""   # empty = no checksum published

    @property
    def file_name(self) -> str:
        """Last path component of the URL, without the query string."""
        tail = self.url.split("?", 1)[0].rstrip("/")
        return tail.rsplit("/", 1)[-1] or "download"


class PatchStep(BaseModel):
    """One incremental transform between two published versions.

    Parsed from the patch metadata endpoint::

        {"from": 0, "to": 17, "pwr": "...", "pwrHead": "...", "sig": "..."}
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_version: int = Field(alias="from", ge=0)
    to_version: int = Field(alias="to", ge=0)
    patch_url: str = Field(alias="pwr")
    head_url: str = Field(default="", alias="pwrHead")
    signature_url: str = Field(default="", alias="sig")
    sha256: str = ""

    @property
    def patch_asset(self) -> Asset:
        return Asset(url=self.patch_url, sha256=self.sha256)

    @property
    def label(self) -> str:
        return f"{self.from_version}_to_{self.to_version}"

    def __str__(self) -> str:
        return f"{self.from_version}→{self.to_version}"


class PatchStepsResponse(BaseModel):
    """Body of the patch metadata endpoint."""

    steps: list[PatchStep] = Field(default_factory=list)


class RuntimeManifest(BaseModel):
    """Runtime archive manifest: ``{version, download_url: {os: {arch: asset}}}``."""

    version: str
    download_url: dict[str, dict[str, Asset]] = Field(default_factory=dict)

    def asset_for(self, os_name: str, arch: str) -> Asset | None:
        return self.download_url.get(os_name, {}).get(arch)


class PolicyKind(StrEnum):
    """How the target version is chosen."""

    PINNED = "pinned"   # exact version
    LATEST = "latest"   # resolve the newest version once per call
    AUTO = "auto"       # track the newest version, tolerate being offline


class VersionPolicy(BaseModel):
    """Target-version policy of an install request."""

    model_config = ConfigDict(frozen=True)

    kind: PolicyKind = PolicyKind.LATEST
    version: int | None = None

    @classmethod
    def pinned(cls, version: int) -> VersionPolicy:
        return cls(kind=PolicyKind.PINNED, version=version)

    @classmethod
    def latest(cls) -> VersionPolicy:
        return cls(kind=PolicyKind.LATEST)

    @classmethod
    def auto(cls) -> VersionPolicy:
        return cls(kind=PolicyKind.AUTO)

    @property
    def variant(self) -> str:
        """Install directory name: the pinned number, or ``latest``."""
        if self.kind == PolicyKind.PINNED:
            return str(self.version)
        return "latest"

    def __str__(self) -> str:
        if self.kind == PolicyKind.PINNED:
            return f"pinned({self.version})"
        return self.kind.value


class InstallRequest(BaseModel):
    """What the caller wants installed."""

    model_config = ConfigDict(frozen=True)

    branch: str = "release"
    policy: VersionPolicy = Field(default_factory=VersionPolicy.latest)


class ResolvedVersion(BaseModel):
    """Outcome of a successful ``ensure_installed`` call."""

    branch: str
    version: int
    variant: str
    install_dir: Path
    previous_version: int = NOT_INSTALLED
    changed: bool = False       # False when the fast path short-circuited

    def __str__(self) -> str:
        return str(self.version)
