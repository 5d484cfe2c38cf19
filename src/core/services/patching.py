"""
Patch pipeline — bring an install tree from one version to another.

    1. Ask the steps endpoint for ``(os, arch, branch, from)`` and plan
       a contiguous chain ``from → … → to``. When it cannot (no steps,
       gaps, or a chain that overshoots a pinned target) and the direct
       fallback is enabled, use a single legacy patch
       ``{base}/{os}/{arch}/{branch}/{from}/{to}.pwr``.
    2. For each step, strictly in order: download the patch and its
       signature into the patch cache (skipped when both are already
       cached as ``{from}_to_{to}.pwr[.sig]``), then run the applier with
       a fresh staging directory outside the target tree.
    3. A failure whose output looks like a signature mismatch means the
       tree was modified out-of-band: wipe it, recreate it empty and
       retry that step exactly once. Any other failure, or a failed
       retry, aborts the chain with a diagnostic log.

Staging directories are removed on every exit path.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError as SchemaError

from src.adapters.base import PatchApplier
from src.adapters.http.transport import HttpTransport, get_json
from src.core.config.paths import AppPaths
from src.core.config.schema import EndpointsConfig, InstallConfig, ToolConfig
from src.core.errors import ExternalToolError, NetworkError, ValidationError
from src.core.models.progress import Stage
from src.core.models.receipt import ApplyRequest, Receipt
from src.core.models.release import PatchStep, PatchStepsResponse
from src.core.observability.diagnostics import write_tool_failure_log
from src.core.reliability.cancellation import CancelToken, ensure_token
from src.core.services.archive import remove_tree, reset_directory
from src.core.services.download import DownloadManager
from src.core.services.integrity import cached_file_valid
from src.core.services.progress import NullReporter, Reporter, Scaler

logger = logging.getLogger(__name__)


def plan_chain(steps: list[PatchStep], from_version: int, to_version: int) -> list[PatchStep]:
    """Pick the contiguous run of ``steps`` that leads ``from → to``.

    Steps ending at or before ``from_version`` are skipped; consumption
    stops at the first step starting at or after ``to_version``.

    Raises:
        ValidationError: The steps leave a gap or do not land on
            ``to_version``.
    """
    if from_version == to_version:
        return []
    if to_version < from_version:
        raise ValidationError(
            f"cannot patch backwards from {from_version} to {to_version}",
            details={"from": from_version, "to": to_version},
        )

    chain: list[PatchStep] = []
    expected = from_version
    for step in steps:
        if step.to_version <= from_version:
            continue
        if step.from_version >= to_version:
            break
        if step.from_version != expected:
            raise ValidationError(
                f"patch chain gap: expected a step from {expected}, got {step}",
                details={"from": from_version, "to": to_version},
            )
        chain.append(step)
        expected = step.to_version

    if expected != to_version:
        raise ValidationError(
            f"patch steps do not lead from {from_version} to {to_version} (ends at {expected})",
            details={"from": from_version, "to": to_version},
        )
    return chain


class PatchPipeline:
    """Sequential patch application with staging and mismatch recovery."""

    def __init__(
        self,
        paths: AppPaths,
        transport: HttpTransport,
        downloads: DownloadManager,
        applier: PatchApplier,
        *,
        endpoints: EndpointsConfig,
        install: InstallConfig,
        tool: ToolConfig,
    ):
        self._paths = paths
        self._transport = transport
        self._downloads = downloads
        self._applier = applier
        self._endpoints = endpoints
        self._install = install
        self._tool = tool

    @property
    def applier(self) -> PatchApplier:
        return self._applier

    # ── Planning ────────────────────────────────────────────────

    def fetch_steps(self, branch: str, from_version: int, cancel: CancelToken | None = None) -> list[PatchStep]:
        """Query the steps endpoint.

        Raises:
            NetworkError: Unreachable, bad status, or malformed body.
        """
        ensure_token(cancel).raise_if_cancelled()
        payload = {
            "os": self._paths.os_name,
            "arch": self._paths.arch,
            "branch": branch,
            "version": str(from_version),
        }
        url = self._endpoints.patch_steps_url
        data = get_json(self._transport, url, payload=payload, timeout=self._install.steps_timeout)
        try:
            steps = PatchStepsResponse.model_validate(data).steps
        except SchemaError as e:
            raise NetworkError(f"malformed patch steps from {url}: {e}", details={"url": url}) from e
        logger.debug("Steps endpoint returned %d steps for %s from %d", len(steps), branch, from_version)
        return steps

    def direct_step(self, branch: str, from_version: int, to_version: int) -> PatchStep:
        base = self._endpoints.patch_base_url.rstrip("/")
        url = (
            f"{base}/{self._paths.os_name}/{self._paths.arch}/{branch}/"
            f"{from_version}/{to_version}{self._endpoints.patch_extension}"
        )
        return PatchStep(from_version=from_version, to_version=to_version, patch_url=url)

    def plan(
        self,
        branch: str,
        from_version: int,
        to_version: int,
        cancel: CancelToken | None = None,
    ) -> list[PatchStep]:
        """Resolve the chain of steps to apply (empty when already there)."""
        if from_version == to_version:
            return []

        try:
            steps = self.fetch_steps(branch, from_version, cancel)
        except NetworkError as e:
            if not self._install.direct_patch_fallback:
                raise
            logger.warning("Steps endpoint failed (%s); using direct patch %d→%d", e, from_version, to_version)
            return [self.direct_step(branch, from_version, to_version)]

        if not steps and not self._install.direct_patch_fallback:
            raise NetworkError(
                f"no patch steps available for {branch} from {from_version}",
                details={"branch": branch, "from": from_version, "to": to_version},
            )
        try:
            return plan_chain(steps, from_version, to_version)
        except ValidationError as e:
            if not self._install.direct_patch_fallback:
                raise
            logger.info("%s; using direct patch %d→%d", e.message, from_version, to_version)
            return [self.direct_step(branch, from_version, to_version)]

    # ── Downloads ───────────────────────────────────────────────

    def cached_paths(self, step: PatchStep) -> tuple[Path, Path | None]:
        ext = self._endpoints.patch_extension
        patch = self._paths.patch_cache_dir / f"{step.label}{ext}"
        sig = self._paths.patch_cache_dir / f"{step.label}{ext}.sig" if step.signature_url else None
        return patch, sig

    def download_step(
        self,
        step: PatchStep,
        reporter: Reporter | None = None,
        cancel: CancelToken | None = None,
    ) -> tuple[Path, Path | None]:
        """Fetch the patch (0–70%) and signature (70–100%) for ``step``."""
        reporter = reporter or NullReporter()
        patch, sig = self.cached_paths(step)
        asset = step.patch_asset
        if cached_file_valid(patch, asset.sha256) and (sig is None or sig.is_file()):
            logger.info("Using cached patch files for %s", step.label)
            reporter.report(Stage.DOWNLOAD, 100, f"Patch {step} cached")
            return patch, sig

        self._downloads.fetch(asset, patch, Scaler(reporter, 0, 70), stage=Stage.DOWNLOAD, cancel=cancel)

        if sig is not None:
            reporter.report(Stage.DOWNLOAD, 70, "Downloading signature...")
            self._downloads.download(
                step.signature_url, sig, Scaler(reporter, 70, 100),
                stage=Stage.DOWNLOAD, file_name=sig.name, cancel=cancel,
            )
        return patch, sig

    def discard_cached(self, steps: list[PatchStep]) -> None:
        for step in steps:
            for path in self.cached_paths(step):
                if path is not None:
                    path.unlink(missing_ok=True)

    # ── Applying ────────────────────────────────────────────────

    def is_signature_mismatch(self, receipt: Receipt) -> bool:
        """Heuristic: does the failure say the tree was modified out-of-band?"""
        text = f"{receipt.error or ''}\n{receipt.combined_output}".lower()
        return any(marker in text for marker in self._install.signature_mismatch_markers)

    def _apply_once(
        self,
        branch: str,
        step: PatchStep,
        patch: Path,
        sig: Path | None,
        target_dir: Path,
        attempt: int,
        cancel: CancelToken,
    ) -> Receipt:
        staging = self._paths.staging_root / f"{branch}-{step.label}-{attempt}"
        reset_directory(staging)
        target_dir.mkdir(parents=True, exist_ok=True)
        try:
            request = ApplyRequest(
                step_id=step.label,
                patch_file=patch,
                target_dir=target_dir,
                staging_dir=staging,
                signature_file=sig,
                timeout=self._tool.apply_timeout,
            )
            return self._applier.apply(request, cancel)
        finally:
            remove_tree(staging)

    def apply_step(
        self,
        branch: str,
        step: PatchStep,
        patch: Path,
        sig: Path | None,
        target_dir: Path,
        cancel: CancelToken | None = None,
    ) -> list[Receipt]:
        """Apply one step, with a single wipe-and-retry on signature mismatch.

        Returns:
            The receipts of every attempt (the last one succeeded).

        Raises:
            ExternalToolError: The step failed; ``log_path`` points at
                the diagnostic log.
        """
        cancel = ensure_token(cancel)
        first = self._apply_once(branch, step, patch, sig, target_dir, 1, cancel)
        if first.ok:
            return [first]

        receipts = [first]
        if self.is_signature_mismatch(first):
            logger.warning(
                "Signature mismatch applying %s to %s; wiping the tree and retrying once",
                step, target_dir,
            )
            reset_directory(target_dir)
            cancel.raise_if_cancelled()
            retry = self._apply_once(branch, step, patch, sig, target_dir, 2, cancel)
            if retry.ok:
                return [first, retry]
            receipts.append(retry)

        context = {
            "branch": branch,
            "step": str(step),
            "target_dir": target_dir,
            "applier": self._applier.name,
        }
        log_path = write_tool_failure_log(self._paths.logs_dir, receipts, context)
        errors = [r.error or f"exit code {r.return_code}" for r in receipts]
        summary = "; retry: ".join(errors)
        raise ExternalToolError(
            f"applying patch {step} failed: {summary}"
            + (f" (see {log_path})" if log_path else ""),
            log_path=log_path,
            attempts=errors,
            details={"branch": branch, "from": step.from_version, "to": step.to_version, "target_dir": target_dir},
        )

    def apply_chain(
        self,
        branch: str,
        from_version: int,
        to_version: int,
        target_dir: Path,
        reporter: Reporter | None = None,
        cancel: CancelToken | None = None,
    ) -> list[PatchStep]:
        """Bring ``target_dir`` from ``from_version`` to ``to_version``.

        Returns:
            The steps that were applied (empty for a no-op).
        """
        reporter = reporter or NullReporter()
        cancel = ensure_token(cancel)
        chain = self.plan(branch, from_version, to_version, cancel)
        if not chain:
            logger.info("%s already at %d; nothing to patch", target_dir, to_version)
            return []

        logger.info(
            "Patching %s %d→%d in %d step(s): %s",
            branch, from_version, to_version, len(chain), ", ".join(str(s) for s in chain),
        )
        total = len(chain)
        for index, step in enumerate(chain):
            cancel.raise_if_cancelled()
            lo, hi = index * 100 / total, (index + 1) * 100 / total
            reporter.report(Stage.PATCH, lo, f"Patching {step} ({index + 1}/{total})")

            patch, sig = self.download_step(step, Scaler(reporter, lo, hi), cancel)
            reporter.report(Stage.PATCH, lo + (hi - lo) * 0.6, "Applying patch...")
            self.apply_step(branch, step, patch, sig, target_dir, cancel)
            reporter.report(Stage.PATCH, hi, f"Patched to {step.to_version}")

        if not self._install.keep_patch_cache:
            self.discard_cached(chain)
        return chain
