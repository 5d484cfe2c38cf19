"""
Diagnostic logs for external-tool failures.

Patch-apply failures are the hardest to reproduce, so each one leaves
a self-contained text file in ``<app_dir>/logs`` with the command
line, exit code, captured output and context, and the raised error
references that file.
"""

from __future__ import annotations

import logging
import shlex
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterable

from src.core.models.receipt import Receipt

logger = logging.getLogger(__name__)


def write_tool_failure_log(
    logs_dir: Path,
    attempts: Iterable[Receipt],
    context: dict[str, Any] | None = None,
    *,
    prefix: str = "patch-failure",
) -> Path | None:
    """Write a diagnostic file for one or more failed tool invocations.

    Returns:
        Path to the written file, or None if it could not be written
        (the original failure must still surface, so write errors are
        only logged).
    """
    now = datetime.now(UTC)
    path = logs_dir / f"{prefix}-{now.strftime('%Y%m%d-%H%M%S-%f')}.log"

    lines: list[str] = [
        f"timestamp: {now.isoformat()}",
    ]
    for key, value in (context or {}).items():
        lines.append(f"{key}: {value}")

    for index, receipt in enumerate(attempts, start=1):
        lines.extend([
            "",
            f"── attempt {index} ({receipt.step_id}) " + "─" * 30,
            f"adapter: {receipt.adapter}",
            f"started_at: {receipt.started_at}",
            f"duration_ms: {receipt.duration_ms}",
            f"command: {shlex.join(receipt.command) if receipt.command else '(none)'}",
            f"exit_code: {receipt.return_code}",
            f"error: {receipt.error or ''}",
            "stdout:",
            receipt.stdout or "(empty)",
            "stderr:",
            receipt.stderr or "(empty)",
        ])

    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    except OSError as e:
        logger.error("Cannot write diagnostic log %s: %s", path, e)
        return None

    logger.info("Diagnostic log written to %s", path)
    return path
