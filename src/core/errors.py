"""
Error taxonomy for the deployment engine.

Every failure the engine surfaces is a ``DeployError`` tagged with an
``ErrorKind``. Callers branch on the kind, not on message text:

    NETWORK        unreachable origin, timeout, bad status
    INTEGRITY      checksum or signature mismatch
    FILESYSTEM     permission, disk space, lock contention
    EXTERNAL_TOOL  non-zero exit from the patch applier or a self-check
    VALIDATION     invalid version or policy input
    CONCURRENCY    an install is already in progress
    CANCELLED      the caller's cancel token fired

Passive background checks swallow NETWORK errors (offline is a normal
state). Explicit installs surface everything.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Any


class ErrorKind(StrEnum):
    """Top-level error categories."""

    NETWORK = "network"
    INTEGRITY = "integrity"
    FILESYSTEM = "filesystem"
    EXTERNAL_TOOL = "external_tool"
    VALIDATION = "validation"
    CONCURRENCY = "concurrency"
    CANCELLED = "cancelled"


class DeployError(Exception):
    """Base class for all engine errors.

    Args:
        message: Human-readable description.
        details: Diagnostic context (branch, versions, paths...).
    """

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        """Serialize for progress sinks and JSON output."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": {k: str(v) if isinstance(v, Path) else v for k, v in self.details.items()},
        }


class NetworkError(DeployError):
    """Remote origin unreachable, timed out, or answered with a bad status."""

    kind = ErrorKind.NETWORK

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        transient: bool = False,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.status = status
        self.transient = transient


class NoVersionsError(NetworkError):
    """The server is reachable but nothing is published for the platform/branch."""


class IntegrityError(DeployError):
    """Checksum or signature mismatch."""

    kind = ErrorKind.INTEGRITY

    def __init__(
        self,
        message: str,
        *,
        path: Path | None = None,
        expected: str = "",
        actual: str = "",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.path = path
        self.expected = expected
        self.actual = actual


class FileSystemError(DeployError):
    """Local filesystem failure (permissions, disk space, locked files)."""

    kind = ErrorKind.FILESYSTEM


class ExternalToolError(DeployError):
    """An external process (patch applier, runtime self-check) failed."""

    kind = ErrorKind.EXTERNAL_TOOL

    def __init__(
        self,
        message: str,
        *,
        log_path: Path | None = None,
        attempts: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.log_path = log_path
        self.attempts: list[str] = list(attempts or [])


class ValidationError(DeployError):
    """Invalid version, policy, or patch chain input."""

    kind = ErrorKind.VALIDATION


class InstallInProgressError(DeployError):
    """A second install was requested while one is running."""

    kind = ErrorKind.CONCURRENCY

    def __init__(self, message: str = "installation already in progress", **kwargs: Any):
        super().__init__(message, **kwargs)


class OperationCancelled(DeployError):
    """The caller cancelled the operation or its deadline passed."""

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "operation cancelled", **kwargs: Any):
        super().__init__(message, **kwargs)
