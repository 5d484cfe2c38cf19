"""
Cancellation tokens — caller-supplied cancel/deadline signal.

Every blocking point in the engine (network reads, retry sleeps,
external processes) checks the token and returns promptly with
``OperationCancelled`` rather than a generic failure.
"""

from __future__ import annotations

import threading
import time

from src.core.errors import OperationCancelled


class CancelToken:
    """Thread-safe cancellation flag with an optional deadline.

    Args:
        timeout: Seconds from now after which the token counts as
            cancelled. ``None`` means no deadline.
    """

    def __init__(self, timeout: float | None = None):
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._reason = "operation cancelled"

    def cancel(self, reason: str = "operation cancelled") -> None:
        """Signal cancellation to every holder of this token."""
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._reason = "deadline exceeded"
            return True
        return False

    def remaining(self, default: float | None = None) -> float | None:
        """Seconds until the deadline, or ``default`` when there is none."""
        if self._deadline is None:
            return default
        left = max(0.0, self._deadline - time.monotonic())
        return left if default is None else min(left, default)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        if seconds <= 0:
            return self.cancelled
        limit = self.remaining(seconds)
        self._event.wait(limit)
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self._reason)


def ensure_token(cancel: CancelToken | None) -> CancelToken:
    """Return ``cancel`` or a fresh never-cancelled token."""
    return cancel if cancel is not None else CancelToken()
