"""
Request coalescing (single-flight).

When several threads ask for the same key while a computation is in
flight, only the first one runs it; the rest block and receive the
same result or the same exception.

Cancellation belongs to each caller. A waiter stops waiting as soon as
its own token fires, and when the shared run ends in
``OperationCancelled`` because somebody else's token fired, the
still-live waiters start over instead of inheriting that error.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, TypeVar

from src.core.errors import OperationCancelled
from src.core.reliability.cancellation import CancelToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

_WAIT_SLICE = 0.05


class _Call(Generic[T]):
    def __init__(self) -> None:
        self.done = threading.Event()
        self.value: T | None = None
        self.error: BaseException | None = None
        self.waiters = 0


class SingleFlight(Generic[T]):
    """Deduplicate concurrent calls by key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[str, _Call[T]] = {}

    def do(self, key: str, fn: Callable[[], T], cancel: CancelToken | None = None) -> T:
        """Run ``fn`` once per in-flight ``key`` and share its outcome.

        Args:
            key: Coalescing key.
            fn: The computation; it should honour ``cancel`` itself.
            cancel: This caller's token. Checked while waiting on
                another caller's run.
        """
        while True:
            with self._lock:
                existing = self._calls.get(key)
                if existing is not None:
                    existing.waiters += 1
                else:
                    call: _Call[T] = _Call()
                    self._calls[key] = call

            if existing is None:
                return self._run(key, call, fn)

            logger.debug("Coalescing request for %s", key)
            self._wait(existing, cancel)
            if isinstance(existing.error, OperationCancelled) and not (cancel is not None and cancel.cancelled):
                logger.debug("Shared run for %s was cancelled by its owner; retrying", key)
                continue
            if existing.error is not None:
                raise existing.error
            return existing.value  # type: ignore[return-value]

    def _run(self, key: str, call: _Call[T], fn: Callable[[], T]) -> T:
        try:
            call.value = fn()
        except BaseException as exc:
            call.error = exc
            raise
        finally:
            with self._lock:
                self._calls.pop(key, None)
            call.done.set()
        return call.value

    @staticmethod
    def _wait(call: _Call[T], cancel: CancelToken | None) -> None:
        if cancel is None:
            call.done.wait()
            return
        while not call.done.wait(_WAIT_SLICE):
            cancel.raise_if_cancelled()

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._calls
