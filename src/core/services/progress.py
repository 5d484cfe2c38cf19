"""
Progress reporting — stage-scoped updates pushed to a typed sink.

Components report through a ``Reporter`` (either a ``ProgressReporter``
or a ``Scaler`` wrapping one). A ``Scaler`` maps its own 0–100 range
into a ``[lo, hi]`` slice of the parent, so a single download inside a
larger stage can report its own completion without knowing how much
of the whole it represents. Scalers compose.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from src.core.models.progress import ProgressEvent, Stage

logger = logging.getLogger(__name__)


class ProgressSink(Protocol):
    """Consumer of progress events (GUI binding, CLI echo, test recorder)."""

    def emit(self, event: ProgressEvent) -> None: ...


class Reporter(Protocol):
    """What engine components report through."""

    def report(self, stage: Stage, percent: float | None, message: str) -> None: ...

    def report_download(
        self,
        stage: Stage,
        percent: float | None,
        message: str,
        *,
        current_file: str | None = None,
        speed: str | None = None,
        downloaded: int | None = None,
        total: int | None = None,
    ) -> None: ...


def _clamp(percent: float | None) -> float | None:
    if percent is None:
        return None
    return max(0.0, min(100.0, float(percent)))


class ProgressReporter:
    """Normalizes and forwards events to a sink.

    A reporter without a sink is a valid no-op. Sink exceptions are
    logged and swallowed: a broken UI binding must not abort an install.
    """

    def __init__(self, sink: ProgressSink | None = None):
        self._sink = sink
        self._lock = threading.Lock()
        self._last: ProgressEvent | None = None

    @property
    def last_event(self) -> ProgressEvent | None:
        with self._lock:
            return self._last

    @property
    def stage(self) -> Stage:
        with self._lock:
            return self._last.stage if self._last is not None else Stage.IDLE

    def report(self, stage: Stage, percent: float | None, message: str) -> None:
        self.emit(ProgressEvent(stage=stage, percent=_clamp(percent), message=message))

    def report_download(
        self,
        stage: Stage,
        percent: float | None,
        message: str,
        *,
        current_file: str | None = None,
        speed: str | None = None,
        downloaded: int | None = None,
        total: int | None = None,
    ) -> None:
        self.emit(ProgressEvent(
            stage=stage,
            percent=_clamp(percent),
            message=message,
            current_file=current_file,
            speed=speed,
            downloaded_bytes=downloaded,
            total_bytes=total,
        ))

    def emit(self, event: ProgressEvent) -> None:
        with self._lock:
            self._last = event
        if self._sink is None:
            return
        try:
            self._sink.emit(event)
        except Exception:
            logger.exception("Progress sink raised; event dropped")

    def reset(self) -> None:
        """Return to idle between independent operations (e.g. install → launch)."""
        with self._lock:
            self._last = None
        if self._sink is not None:
            try:
                self._sink.emit(ProgressEvent(stage=Stage.IDLE, percent=0.0, message=""))
            except Exception:
                logger.exception("Progress sink raised on reset")


class Scaler:
    """Map a child's 0–100% into ``[lo, hi]`` of the wrapped reporter."""

    def __init__(self, reporter: Reporter | None, lo: float, hi: float):
        if lo > hi:
            raise ValueError(f"scaler range inverted: {lo} > {hi}")
        self._reporter = reporter
        self._lo = float(lo)
        self._hi = float(hi)

    @property
    def bounds(self) -> tuple[float, float]:
        return self._lo, self._hi

    def scale(self, percent: float | None) -> float | None:
        if percent is None:
            return None
        p = _clamp(percent)
        return self._lo + p / 100.0 * (self._hi - self._lo)

    def report(self, stage: Stage, percent: float | None, message: str) -> None:
        if self._reporter is not None:
            self._reporter.report(stage, self.scale(percent), message)

    def report_download(
        self,
        stage: Stage,
        percent: float | None,
        message: str,
        *,
        current_file: str | None = None,
        speed: str | None = None,
        downloaded: int | None = None,
        total: int | None = None,
    ) -> None:
        if self._reporter is not None:
            self._reporter.report_download(
                stage, self.scale(percent), message,
                current_file=current_file, speed=speed,
                downloaded=downloaded, total=total,
            )


class NullReporter:
    """Reporter that discards everything."""

    def report(self, stage: Stage, percent: float | None, message: str) -> None:
        return None

    def report_download(self, stage: Stage, percent: float | None, message: str, **kwargs: object) -> None:
        return None


def format_speed(bytes_per_sec: float) -> str:
    """Human-readable transfer rate (``512 B/s``, ``1.5 MB/s``)."""
    unit = 1024.0
    if bytes_per_sec < unit:
        return f"{bytes_per_sec:.0f} B/s"
    value = bytes_per_sec / unit
    for prefix in "KMGTP":
        if value < unit:
            return f"{value:.1f} {prefix}B/s"
        value /= unit
    return f"{value:.1f} EB/s"
