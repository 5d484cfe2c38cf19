"""
Apply requests and receipts — the contract with the patch applier.

The pipeline sends an ``ApplyRequest``; the applier returns a
``Receipt``. Appliers never raise for tool failures: a non-zero exit
is captured in the receipt together with stdout/stderr so the pipeline
can decide whether it looks like a signature mismatch.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class ApplyRequest(BaseModel):
    """One invocation of the diff-apply tool."""

    step_id: str                       # e.g. "0_to_17"
    patch_file: Path
    target_dir: Path
    staging_dir: Path
    signature_file: Path | None = None
    timeout: float | None = None       # seconds, None = no limit


class Receipt(BaseModel):
    """Result of an applier invocation."""

    adapter: str
    step_id: str
    status: Literal["ok", "failed"] = "ok"

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    command: list[str] = Field(default_factory=list)
    return_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def combined_output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)

    @classmethod
    def success(cls, adapter: str, step_id: str, **kwargs: Any) -> Receipt:
        return cls(adapter=adapter, step_id=step_id, status="ok", **kwargs)

    @classmethod
    def failure(cls, adapter: str, step_id: str, error: str, **kwargs: Any) -> Receipt:
        return cls(adapter=adapter, step_id=step_id, status="failed", error=error, **kwargs)
