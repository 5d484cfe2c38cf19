"""
Process runner — execute external tools and capture their output.

This is the single place the engine starts child processes (the
diff-apply tool, runtime and tool self-checks). Output is captured for
diagnostics; the caller's cancel token is polled while the child runs
and a cancelled token kills the child.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from src.core.errors import OperationCancelled
from src.core.reliability.cancellation import CancelToken, ensure_token

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1
_OUTPUT_LIMIT = 64 * 1024


@dataclass
class CommandResult:
    """Outcome of one child process."""

    command: list[str]
    return_code: int | None
    stdout: str = ""
    stderr: str = ""
    elapsed_ms: int = 0
    timed_out: bool = False
    error: str = ""           # spawn failure (binary missing, not executable)
    started_at: float = field(default_factory=time.time)

    @property
    def ok(self) -> bool:
        return self.return_code == 0 and not self.timed_out and not self.error


Runner = Callable[..., CommandResult]


def _creation_flags() -> int:
    # No console window for child tools on Windows
    if sys.platform.startswith("win"):
        return getattr(subprocess, "CREATE_NO_WINDOW", 0)
    return 0


def run_command(
    cmd: Sequence[str | os.PathLike[str]],
    *,
    timeout: float | None = None,
    cwd: Path | None = None,
    cancel: CancelToken | None = None,
    env_overrides: dict[str, str] | None = None,
) -> CommandResult:
    """Run ``cmd`` to completion, honouring ``timeout`` and ``cancel``.

    Returns:
        CommandResult. A timeout or spawn error is reported in the
        result, not raised.

    Raises:
        OperationCancelled: The token fired while the child was running;
            the child has been killed.
    """
    cancel = ensure_token(cancel)
    argv = [str(part) for part in cmd]
    cancel.raise_if_cancelled()

    env = None
    if env_overrides:
        env = os.environ.copy()
        env.update(env_overrides)

    logger.debug("Executing: %s (cwd=%s)", argv, cwd)
    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            creationflags=_creation_flags(),
        )
    except OSError as e:
        logger.debug("Cannot start %s: %s", argv[0], e)
        return CommandResult(command=argv, return_code=None, error=str(e))

    stdout, stderr = "", ""
    timed_out = False
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel.cancelled:
                _kill(proc)
                logger.info("Cancelled %s after %.1fs", argv[0], time.monotonic() - start)
                raise OperationCancelled(f"cancelled while running {Path(argv[0]).name}")
            if timeout is not None and time.monotonic() - start >= timeout:
                _kill(proc)
                stdout, stderr = proc.communicate()
                timed_out = True
                break

    elapsed_ms = int((time.monotonic() - start) * 1000)
    result = CommandResult(
        command=argv,
        return_code=proc.returncode,
        stdout=(stdout or "")[-_OUTPUT_LIMIT:],
        stderr=(stderr or "")[-_OUTPUT_LIMIT:],
        elapsed_ms=elapsed_ms,
        timed_out=timed_out,
        error=f"command timed out after {timeout}s" if timed_out else "",
    )
    logger.debug("%s exited with %s in %dms", argv[0], proc.returncode, elapsed_ms)
    return result


def _kill(proc: subprocess.Popen) -> None:
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning("Process %s did not exit after kill", proc.pid)


def is_functional(
    binary: Path,
    args: Sequence[str],
    *,
    runner: Runner = run_command,
    timeout: float | None = 30.0,
    cancel: CancelToken | None = None,
) -> bool:
    """Whether ``binary`` exists and runs a trivial self-check successfully."""
    if not binary.is_file():
        return False
    result = runner([binary, *args], timeout=timeout, cancel=cancel)
    if not result.ok:
        logger.debug(
            "Self-check of %s failed (exit=%s): %s",
            binary, result.return_code, result.error or result.stderr.strip()[:200],
        )
    return result.ok
