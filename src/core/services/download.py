"""
Download manager — resumable, retrying file fetcher.

Data lands in a ``<dest>.part`` sibling. A later attempt with a
leftover part file asks for ``Range: bytes=<size>-`` and only appends
if the server answers ``206 Partial Content`` *and* advertises
``Accept-Ranges: bytes``; anything else discards the partial data and
starts from zero. On success the part file is fsynced and atomically
renamed over the destination.

Transient failures (connection reset, broken pipe, timeouts, short
reads, 5xx) are retried with exponential backoff; 4xx fails at once.
A cancelled token aborts between chunks and leaves the part file in
place so the next call resumes.

Checksum verification is a separate, explicit step
(``integrity.verify_sha256``) — see ``fetch`` for the combined form.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable

from src.adapters.http.transport import HttpResponse, HttpTransport, is_transient_status
from src.core.config.paths import current_os
from src.core.config.schema import DownloadConfig
from src.core.errors import FileSystemError, NetworkError, OperationCancelled
from src.core.models.progress import Stage
from src.core.models.release import Asset
from src.core.reliability.cancellation import CancelToken, ensure_token
from src.core.reliability.retry import RetryPolicy
from src.core.services.integrity import verify_sha256
from src.core.services.progress import Reporter, format_speed

logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"


def part_path(dest: Path) -> Path:
    return dest.with_name(dest.name + PART_SUFFIX)


def _content_length(response: HttpResponse) -> int:
    raw = response.headers.get("Content-Length")
    try:
        return max(0, int(raw)) if raw is not None else 0
    except (TypeError, ValueError):
        return 0


class DownloadManager:
    """Fetch URLs to local files with resume, retry and throttled progress.

    Args:
        transport: HTTP transport.
        retry: Attempt/backoff policy for transient failures.
        chunk_size: Bytes per read.
        progress_interval: Minimum seconds between progress callbacks.
        timeout: Per-request socket timeout.
        clock: Monotonic clock (injectable for tests).
        os_name: Platform; on Windows the destination is removed before
            the final rename.
    """

    def __init__(
        self,
        transport: HttpTransport,
        *,
        retry: RetryPolicy | None = None,
        chunk_size: int = 64 * 1024,
        progress_interval: float = 0.2,
        timeout: float | None = 60.0,
        clock: Callable[[], float] = time.monotonic,
        os_name: str | None = None,
    ):
        self._transport = transport
        self._retry = retry or RetryPolicy()
        self._chunk_size = chunk_size
        self._interval = progress_interval
        self._timeout = timeout
        self._clock = clock
        self._os_name = os_name or current_os()

    @classmethod
    def from_config(cls, config: DownloadConfig, transport: HttpTransport, **kwargs) -> DownloadManager:
        return cls(
            transport,
            retry=RetryPolicy(
                max_attempts=config.max_attempts,
                base_delay=config.base_delay,
                max_delay=config.max_delay,
            ),
            chunk_size=config.chunk_size,
            progress_interval=config.progress_interval,
            timeout=config.timeout,
            **kwargs,
        )

    # ── Public API ──────────────────────────────────────────────

    def download(
        self,
        url: str,
        dest: Path,
        reporter: Reporter | None = None,
        *,
        stage: Stage = Stage.DOWNLOAD,
        file_name: str | None = None,
        cancel: CancelToken | None = None,
    ) -> Path:
        """Download ``url`` to ``dest``.

        Raises:
            NetworkError: Non-transient failure, or retries exhausted.
            FileSystemError: Local write/rename failure.
            OperationCancelled: Token fired; the part file is kept.
        """
        cancel = ensure_token(cancel)
        file_name = file_name or dest.name
        last_error: NetworkError | None = None

        for attempt in self._retry.attempts():
            if attempt > 1:
                delay = self._retry.delay_for(attempt)
                if reporter is not None:
                    reporter.report(stage, 0, f"Retrying download ({attempt}/{self._retry.max_attempts})...")
                if cancel.wait(delay):
                    raise OperationCancelled(f"download of {file_name} cancelled")
            cancel.raise_if_cancelled()

            try:
                self._attempt(url, dest, reporter, stage, file_name, cancel)
                return dest
            except NetworkError as e:
                if not e.transient:
                    logger.error("Download of %s failed: %s", url, e)
                    raise
                last_error = e
                self._retry.log_retry(f"Download of {file_name}", attempt, e)

        raise NetworkError(
            f"download of {file_name} failed after {self._retry.max_attempts} attempts: {last_error}",
            status=last_error.status if last_error else None,
            transient=True,
            details={"url": url, "dest": dest},
        )

    def fetch(
        self,
        asset: Asset,
        dest: Path,
        reporter: Reporter | None = None,
        *,
        stage: Stage = Stage.DOWNLOAD,
        cancel: CancelToken | None = None,
    ) -> Path:
        """Download ``asset`` and verify its checksum when one is published."""
        self.download(asset.url, dest, reporter, stage=stage, file_name=asset.file_name, cancel=cancel)
        if asset.sha256:
            verify_sha256(dest, asset.sha256)
        return dest

    # ── One attempt ─────────────────────────────────────────────

    def _open(self, url: str, offset: int) -> HttpResponse:
        headers = {"Range": f"bytes={offset}-"} if offset > 0 else {}
        return self._transport.request("GET", url, headers=headers, timeout=self._timeout)

    def _attempt(
        self,
        url: str,
        dest: Path,
        reporter: Reporter | None,
        stage: Stage,
        file_name: str,
        cancel: CancelToken,
    ) -> None:
        part = part_path(dest)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileSystemError(f"cannot create {dest.parent}: {e}", details={"path": dest.parent}) from e

        resume_from = part.stat().st_size if part.is_file() else 0
        response = self._open(url, resume_from)

        if resume_from > 0:
            accept = (response.headers.get("Accept-Ranges") or "").strip().lower()
            trusted = response.status == 206 and accept == "bytes"
            logger.debug(
                "Resume of %s at %d: status=%d accept-ranges=%r",
                file_name, resume_from, response.status, accept,
            )
            if not trusted:
                logger.info("Server did not honour range request for %s; restarting from zero", file_name)
                part.unlink(missing_ok=True)
                if response.status != 200:
                    # 206 without Accept-Ranges, 416, ...: re-request the whole file
                    response.close()
                    response = self._open(url, 0)
                resume_from = 0

        try:
            if response.status not in (200, 206):
                raise NetworkError(
                    f"GET {url} returned HTTP {response.status}",
                    status=response.status,
                    transient=is_transient_status(response.status),
                    details={"url": url},
                )

            length = _content_length(response)
            total = length + resume_from if length > 0 else 0
            self._stream(response, part, resume_from, total, reporter, stage, file_name, cancel)
        finally:
            response.close()

        try:
            if self._os_name == "windows":
                dest.unlink(missing_ok=True)
            os.replace(part, dest)
        except OSError as e:
            raise FileSystemError(f"cannot finalize {dest}: {e}", details={"path": dest}) from e

        final_size = dest.stat().st_size
        if reporter is not None:
            reporter.report_download(
                stage, 100, "Download complete",
                current_file=file_name, speed="", downloaded=final_size, total=total or final_size,
            )
        logger.info("Downloaded %s (%d bytes)", file_name, final_size)

    def _stream(
        self,
        response: HttpResponse,
        part: Path,
        resume_from: int,
        total: int,
        reporter: Reporter | None,
        stage: Stage,
        file_name: str,
        cancel: CancelToken,
    ) -> None:
        downloaded = resume_from
        last_tick = self._clock()
        last_bytes = downloaded

        try:
            out = part.open("ab" if resume_from > 0 else "wb")
        except OSError as e:
            raise FileSystemError(f"cannot open {part}: {e}", details={"path": part}) from e

        with out:
            while True:
                if cancel.cancelled:
                    out.flush()
                    raise OperationCancelled(f"download of {file_name} cancelled")

                chunk = response.read(self._chunk_size)
                if not chunk:
                    break
                try:
                    out.write(chunk)
                except OSError as e:
                    raise FileSystemError(f"cannot write {part}: {e}", details={"path": part}) from e
                downloaded += len(chunk)

                now = self._clock()
                elapsed = now - last_tick
                if reporter is not None and elapsed >= self._interval:
                    speed = (downloaded - last_bytes) / elapsed if elapsed > 0 else 0.0
                    percent = downloaded / total * 100 if total > 0 else None
                    reporter.report_download(
                        stage, percent, "Downloading...",
                        current_file=file_name, speed=format_speed(speed),
                        downloaded=downloaded, total=total,
                    )
                    last_tick = now
                    last_bytes = downloaded

            if total > 0 and downloaded < total:
                out.flush()
                raise NetworkError(
                    f"unexpected EOF for {file_name}: {downloaded}/{total} bytes",
                    transient=True,
                )

            try:
                out.flush()
                os.fsync(out.fileno())
            except OSError as e:
                raise FileSystemError(f"cannot sync {part}: {e}", details={"path": part}) from e
