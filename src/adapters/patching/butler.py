"""
Butler applier — drive the external binary-diff tool.

CLI contract::

    <tool> apply --staging-dir <dir> [--signature <sigfile>] <patchFile> <targetDir>

Exit code 0 is success. Anything else comes back as a failed receipt
with the captured output attached.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable

from src.adapters.base import PatchApplier
from src.adapters.shell.command import CommandResult, run_command
from src.core.models.receipt import ApplyRequest, Receipt
from src.core.reliability.cancellation import CancelToken

logger = logging.getLogger(__name__)


def build_apply_command(tool: Path, request: ApplyRequest) -> list[str]:
    """Assemble the tool's argv for ``request``."""
    cmd = [str(tool), "apply", "--staging-dir", str(request.staging_dir)]
    if request.signature_file is not None:
        cmd += ["--signature", str(request.signature_file)]
    cmd += [str(request.patch_file), str(request.target_dir)]
    return cmd


class ButlerApplier(PatchApplier):
    """Apply patches by invoking the tool binary at ``tool_path``."""

    def __init__(
        self,
        tool_path: Path,
        *,
        runner: Callable[..., CommandResult] = run_command,
    ):
        self._tool_path = Path(tool_path)
        self._runner = runner

    @property
    def name(self) -> str:
        return "butler"

    @property
    def tool_path(self) -> Path:
        return self._tool_path

    def is_available(self) -> bool:
        return self._tool_path.is_file()

    def apply(self, request: ApplyRequest, cancel: CancelToken | None = None) -> Receipt:
        cmd = build_apply_command(self._tool_path, request)
        started = datetime.now(UTC).isoformat()
        logger.info("Applying %s to %s", request.patch_file.name, request.target_dir)

        result = self._runner(cmd, timeout=request.timeout, cancel=cancel)

        fields = dict(
            started_at=started,
            ended_at=datetime.now(UTC).isoformat(),
            duration_ms=result.elapsed_ms,
            command=result.command,
            return_code=result.return_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )
        if result.ok:
            return Receipt.success(self.name, request.step_id, **fields)

        error = result.error
        if not error:
            lines = result.stderr.strip().splitlines()
            error = lines[-1] if lines else f"exit code {result.return_code}"
        return Receipt.failure(self.name, request.step_id, error=error, **fields)
