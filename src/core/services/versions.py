"""
Version resolver — discover the newest published version of a branch.

Discovery works against the legacy per-version probe URL
(``{base}/{os}/{arch}/{branch}/0/{version}.pwr``, HTTP 200 = exists):

    1. Checkpoints — probe a small ladder (1, 5, 10, 25). The first
       existing one becomes the search base. None existing is an
       error: ``NoVersionsError`` when the server answered, plain
       ``NetworkError`` when it could not be reached at all.
    2. Exponential search — from the base, double a step until a probe
       misses; that miss is the upper bound.
    3. Binary search — the highest existing version in [base, upper].

The algorithm assumes existence is monotonic within one run: once N is
missing, nothing above N is assumed present.

Probe results are cached per exact version (positives forever,
negatives for the TTL), resolved "latest" values for the TTL, and
concurrent resolutions of the same (os, arch, branch) share one
in-flight run.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from src.adapters.http.transport import HttpTransport, head_ok
from src.core.config.schema import DiscoveryConfig, EndpointsConfig
from src.core.errors import NetworkError, NoVersionsError, OperationCancelled, ValidationError
from src.core.reliability.cache import TTLCache
from src.core.reliability.cancellation import CancelToken, ensure_token
from src.core.reliability.coalesce import SingleFlight

logger = logging.getLogger(__name__)

KNOWN_BRANCHES = ("release", "pre-release")


@dataclass
class BranchListing:
    """Result of listing several branches at once."""

    versions: dict[str, list[int]] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class VersionResolver:
    """Adaptive remote version discovery with caching and coalescing.

    Args:
        transport: HTTP transport used for HEAD probes.
        discovery: Checkpoints, step cap, delays, TTL.
        endpoints: Probe base URL and extension.
        os_name: Platform segment of the probe URL.
        arch: Architecture segment of the probe URL.
        clock: Monotonic clock for the TTL caches.
    """

    def __init__(
        self,
        transport: HttpTransport,
        discovery: DiscoveryConfig,
        endpoints: EndpointsConfig,
        *,
        os_name: str,
        arch: str,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport = transport
        self._discovery = discovery
        self._endpoints = endpoints
        self._os = os_name
        self._arch = arch

        self._present: TTLCache[bool] = TTLCache(None, clock=clock)
        self._absent: TTLCache[bool] = TTLCache(discovery.cache_ttl, clock=clock)
        self._latest: TTLCache[int] = TTLCache(discovery.cache_ttl, clock=clock)
        self._listings: TTLCache[list[int]] = TTLCache(discovery.cache_ttl, clock=clock)
        self._flight_latest: SingleFlight[int] = SingleFlight()
        self._flight_list: SingleFlight[list[int]] = SingleFlight()

    # ── Keys & URLs ─────────────────────────────────────────────

    def cache_key(self, branch: str) -> str:
        return f"{self._os}-{self._arch}-{branch}"

    def probe_url(self, branch: str, version: int) -> str:
        base = self._endpoints.patch_base_url.rstrip("/")
        return f"{base}/{self._os}/{self._arch}/{branch}/0/{version}{self._endpoints.patch_extension}"

    # ── Probing ─────────────────────────────────────────────────

    def version_exists(self, branch: str, version: int, cancel: CancelToken | None = None) -> bool:
        """Probe one version, consulting the per-version cache first.

        Raises:
            NetworkError: The origin could not be reached (not cached).
            OperationCancelled: Token fired.
        """
        cancel = ensure_token(cancel)
        key = (branch, version)
        if self._present.get(key):
            return True
        if self._absent.get(key):
            return False

        cancel.raise_if_cancelled()
        exists = head_ok(self._transport, self.probe_url(branch, version), timeout=self._discovery.probe_timeout)
        if exists:
            self._present.set(key, True)
        else:
            self._absent.set(key, True)
        logger.debug("Probe %s/%d: %s", branch, version, "exists" if exists else "missing")

        if cancel.wait(self._discovery.probe_delay):
            raise OperationCancelled("version discovery cancelled")
        return exists

    def _find_base(self, branch: str, cancel: CancelToken) -> int:
        unreachable: list[NetworkError] = []
        for checkpoint in self._discovery.checkpoints:
            try:
                if self.version_exists(branch, checkpoint, cancel):
                    logger.debug("Base checkpoint for %s: %d", branch, checkpoint)
                    return checkpoint
            except NetworkError as e:
                logger.debug("Checkpoint %d for %s unreachable: %s", checkpoint, branch, e)
                unreachable.append(e)

        details = {"branch": branch, "os": self._os, "arch": self._arch}
        if unreachable and len(unreachable) == len(self._discovery.checkpoints):
            raise NetworkError(
                f"cannot reach patch server for {self._os}/{self._arch} ({unreachable[-1].message})",
                transient=True,
                details=details,
            )
        raise NoVersionsError(
            f"no versions published for {branch} on {self._os}/{self._arch}",
            details=details,
        )

    def _find_upper_bound(self, branch: str, base: int, cancel: CancelToken) -> int:
        current = base
        step = max(base, 10)
        while True:
            candidate = current + step
            if not self.version_exists(branch, candidate, cancel):
                return candidate
            current = candidate
            step *= 2
            if step > self._discovery.max_step:
                return current + step

    def _binary_search(self, branch: str, low: int, high: int, cancel: CancelToken) -> int:
        latest = low
        while low < high:
            mid = (low + high + 1) // 2
            if self.version_exists(branch, mid, cancel):
                latest = mid
                low = mid
            else:
                high = mid - 1
        return latest

    def _bounds(self, branch: str, cancel: CancelToken) -> tuple[int, int]:
        base = self._find_base(branch, cancel)
        return base, self._find_upper_bound(branch, base, cancel)

    # ── Public API ──────────────────────────────────────────────

    def find_latest(self, branch: str, cancel: CancelToken | None = None) -> int:
        """Highest published version of ``branch``. Never returns 0.

        Raises:
            NoVersionsError: Reachable but nothing published.
            NetworkError: Origin unreachable.
        """
        key = self.cache_key(branch)
        cached = self._latest.get(key)
        if cached is not None:
            logger.debug("Latest for %s from cache: %d", key, cached)
            return cached

        token = ensure_token(cancel)

        def resolve() -> int:
            base, upper = self._bounds(branch, token)
            latest = self._binary_search(branch, base, upper, token)
            self._latest.set(key, latest)
            logger.info("Latest version for %s: %d", key, latest)
            return latest

        return self._flight_latest.do(key, resolve, token)

    def list_available_versions(self, branch: str, cancel: CancelToken | None = None) -> list[int]:
        """Every published version from the base to the upper bound.

        O(n) remote probes, batched across worker threads. Only for
        explicit user requests, never on an install path.
        """
        key = self.cache_key(branch)
        cached = self._listings.get(key)
        if cached is not None:
            return list(cached)

        token = ensure_token(cancel)

        def collect() -> list[int]:
            base, upper = self._bounds(branch, token)
            candidates = list(range(base, upper + 1))
            batch = max(1, self._discovery.list_batch_size)
            logger.info("Listing %s: probing %d candidates (%d..%d)", key, len(candidates), base, upper)

            with ThreadPoolExecutor(max_workers=batch, thread_name_prefix="probe") as pool:
                flags = list(pool.map(lambda v: self.version_exists(branch, v, token), candidates))
            versions = [v for v, exists in zip(candidates, flags) if exists]
            self._listings.set(key, versions)
            return versions

        return list(self._flight_list.do(key, collect, token))

    def list_both_branches(
        self,
        branches: tuple[str, ...] = KNOWN_BRANCHES,
        cancel: CancelToken | None = None,
    ) -> BranchListing:
        """List several branches in parallel; per-branch errors are collected."""
        listing = BranchListing()
        with ThreadPoolExecutor(max_workers=len(branches) or 1, thread_name_prefix="list") as pool:
            futures = {b: pool.submit(self.list_available_versions, b, cancel) for b in branches}
            for branch, future in futures.items():
                try:
                    listing.versions[branch] = future.result()
                except OperationCancelled:
                    raise
                except NetworkError as e:
                    logger.warning("Listing %s failed: %s", branch, e)
                    listing.versions[branch] = []
                    listing.errors[branch] = e
        return listing

    def verify_version_exists(self, branch: str, version: int, cancel: CancelToken | None = None) -> None:
        """Check that a pinned version is published.

        Raises:
            ValidationError: ``version`` is not a positive integer, or
                the server reports it missing.
            NetworkError: Origin unreachable.
        """
        if not isinstance(version, int) or isinstance(version, bool) or version <= 0:
            raise ValidationError(f"invalid version {version!r}", details={"branch": branch})
        if not self.version_exists(branch, version, cancel):
            raise ValidationError(
                f"version {version} not found on {branch}",
                details={"branch": branch, "version": version},
            )

    def clear_cache(self) -> None:
        """Forget every cached probe, latest and listing."""
        self._present.clear()
        self._absent.clear()
        self._latest.clear()
        self._listings.clear()
        logger.debug("Version caches cleared")
