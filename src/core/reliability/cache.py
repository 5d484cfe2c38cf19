"""
TTL cache — time-bounded memoization with a lock-protected map.

Critical sections are read-copy-return: the lock is never held while
the caller computes a value or performs network I/O.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value and the clock reading when it was stored."""

    value: T
    timestamp: float


class TTLCache(Generic[T]):
    """Thread-safe key/value cache whose entries expire after ``ttl`` seconds.

    Args:
        ttl: Lifetime of an entry in seconds. ``None`` never expires.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        ttl: float | None = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[Hashable, CacheEntry[T]] = {}

    @property
    def ttl(self) -> float | None:
        return self._ttl

    def get(self, key: Hashable) -> T | None:
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def get_entry(self, key: Hashable) -> CacheEntry[T] | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._ttl is not None and now - entry.timestamp >= self._ttl:
                del self._entries[key]
                return None
            return entry

    def set(self, key: Hashable, value: T) -> None:
        entry = CacheEntry(value=value, timestamp=self._clock())
        with self._lock:
            self._entries[key] = entry

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
