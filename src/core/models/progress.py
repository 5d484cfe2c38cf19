"""
Progress events — what the engine pushes to its progress sink.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class Stage(StrEnum):
    """Fixed, ordered set of install stages."""

    IDLE = "idle"
    VERIFY = "verify"
    RUNTIME = "runtime"
    TOOL = "tool"
    VERSION = "version"
    DOWNLOAD = "download"
    PATCH = "patch"
    ONLINE_FIX = "online_fix"
    LAUNCH = "launch"
    COMPLETE = "complete"

    @property
    def order(self) -> int:
        return _ORDER[self]


_ORDER = {stage: index for index, stage in enumerate(Stage)}


class ProgressEvent(BaseModel):
    """A single progress update.

    ``percent`` is ``None`` when the total is unknown (e.g. a download
    without ``Content-Length``).
    """

    stage: Stage
    percent: float | None = Field(default=0.0, ge=0.0, le=100.0)
    message: str = ""
    current_file: str | None = None
    speed: str | None = None
    downloaded_bytes: int | None = None
    total_bytes: int | None = None   # 0 = unknown
