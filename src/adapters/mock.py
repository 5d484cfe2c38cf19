"""
Mock applier — scripted test double for the diff-apply tool.

Outcomes are consumed in order, one per ``apply`` call; once the
script runs out every call succeeds. A successful call can optionally
materialize files in the target directory so downstream checks (the
client binary) see a real install tree.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Iterable

from src.adapters.base import PatchApplier
from src.core.models.receipt import ApplyRequest, Receipt
from src.core.reliability.cancellation import CancelToken, ensure_token


class Outcome(StrEnum):
    """Scripted result of one apply call."""

    SUCCESS = "success"
    SIGNATURE_MISMATCH = "signature_mismatch"
    FAILURE = "failure"


SIGNATURE_MISMATCH_STDERR = "error: signature mismatch: file was modified (expected hash differs)"


class MockApplier(PatchApplier):
    """Universal applier double.

    Args:
        outcomes: Results for successive calls.
        produce_files: Relative paths written into the target dir on success.
    """

    def __init__(
        self,
        outcomes: Iterable[Outcome | str] = (),
        *,
        produce_files: Iterable[str] = (),
        available: bool = True,
    ):
        self._outcomes = [Outcome(o) for o in outcomes]
        self._produce = list(produce_files)
        self._available = available
        self._calls: list[ApplyRequest] = []
        self.staging_seen: list[bool] = []

    @property
    def name(self) -> str:
        return "mock"

    @property
    def calls(self) -> list[ApplyRequest]:
        """Every request this mock has received."""
        return self._calls

    @property
    def call_count(self) -> int:
        return len(self._calls)

    def is_available(self) -> bool:
        return self._available

    def script(self, *outcomes: Outcome | str) -> None:
        self._outcomes.extend(Outcome(o) for o in outcomes)

    def apply(self, request: ApplyRequest, cancel: CancelToken | None = None) -> Receipt:
        ensure_token(cancel).raise_if_cancelled()
        self._calls.append(request)
        self.staging_seen.append(request.staging_dir.is_dir())
        outcome = self._outcomes.pop(0) if self._outcomes else Outcome.SUCCESS
        cmd = ["mock", "apply", str(request.patch_file), str(request.target_dir)]

        if outcome == Outcome.SIGNATURE_MISMATCH:
            return Receipt.failure(
                self.name, request.step_id,
                error="signature mismatch",
                command=cmd, return_code=1,
                stderr=SIGNATURE_MISMATCH_STDERR,
            )
        if outcome == Outcome.FAILURE:
            return Receipt.failure(
                self.name, request.step_id,
                error="patch apply failed",
                command=cmd, return_code=2,
                stderr="error: unexpected end of patch stream",
            )

        for rel in self._produce:
            path = request.target_dir / Path(rel)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(request.step_id, encoding="utf-8")
        return Receipt.success(self.name, request.step_id, command=cmd, return_code=0)

    def reset(self) -> None:
        self._calls.clear()
        self._outcomes.clear()
        self.staging_seen.clear()
