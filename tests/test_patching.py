"""
Tests for the patch pipeline — chain planning, downloads, staging and
signature-mismatch recovery.
"""

import json
from pathlib import Path

import pytest

from src.adapters.mock import MockApplier, Outcome
from src.core.errors import ExternalToolError, IntegrityError, NetworkError, OperationCancelled, ValidationError
from src.core.models.progress import Stage
from src.core.models.receipt import Receipt
from src.core.models.release import PatchStep
from src.core.reliability.cancellation import CancelToken
from src.core.services.download import DownloadManager
from src.core.services.patching import PatchPipeline, plan_chain
from src.core.services.progress import ProgressReporter
from tests.fakes import PATCH_BASE, STEPS_URL, FakeResponse, sha256

CDN = "https://cdn.test/patches"
CLIENT = "Client/GameClient"


def step(a: int, b: int, sig: bool = True) -> PatchStep:
    return PatchStep.model_validate({
        "from": a,
        "to": b,
        "pwr": f"{CDN}/{a}_{b}.pwr",
        "sig": f"{CDN}/{a}_{b}.pwr.sig" if sig else "",
    })


def step_json(a: int, b: int) -> dict:
    return {"from": a, "to": b, "pwr": f"{CDN}/{a}_{b}.pwr", "pwrHead": "", "sig": f"{CDN}/{a}_{b}.pwr.sig"}


def make_pipeline(paths, transport, config, applier=None, **install) -> PatchPipeline:
    downloads = DownloadManager.from_config(config.download, transport, os_name="linux")
    return PatchPipeline(
        paths, transport, downloads, applier or MockApplier(produce_files=[CLIENT]),
        endpoints=config.endpoints,
        install=config.install.model_copy(update=install),
        tool=config.tool,
    )


def serve_chain(transport, *pairs: tuple[int, int]) -> None:
    transport.serve_json(STEPS_URL, {"steps": [step_json(a, b) for a, b in pairs]})
    for a, b in pairs:
        transport.serve_file(f"{CDN}/{a}_{b}.pwr", f"patch {a}->{b}".encode())
        transport.serve_file(f"{CDN}/{a}_{b}.pwr.sig", f"sig {a}->{b}".encode())


# ── Planning ─────────────────────────────────────────────────────────


class TestPlanChain:
    STEPS = [step(0, 5), step(5, 10), step(10, 17)]

    def test_full_chain(self):
        assert [str(s) for s in plan_chain(self.STEPS, 0, 17)] == ["0→5", "5→10", "10→17"]

    def test_skips_applied_steps(self):
        assert [str(s) for s in plan_chain(self.STEPS, 5, 17)] == ["5→10", "10→17"]

    def test_stops_at_target(self):
        assert [str(s) for s in plan_chain(self.STEPS, 0, 10)] == ["0→5", "5→10"]

    def test_same_version_is_empty(self):
        assert plan_chain(self.STEPS, 17, 17) == []

    def test_gap_rejected(self):
        with pytest.raises(ValidationError, match="gap"):
            plan_chain([step(0, 5), step(7, 10)], 0, 10)

    def test_short_chain_rejected(self):
        with pytest.raises(ValidationError, match="ends at 17"):
            plan_chain(self.STEPS, 0, 20)

    def test_backwards_rejected(self):
        with pytest.raises(ValidationError, match="backwards"):
            plan_chain(self.STEPS, 17, 5)

    def test_step_label(self):
        assert step(0, 17).label == "0_to_17"


class TestPlan:
    def test_queries_steps_endpoint(self, paths, transport, config):
        seen = {}

        def handler(method, url, headers, data):
            seen.update(json.loads(data))
            body = json.dumps({"steps": [step_json(3, 17)]}).encode()
            return FakeResponse(200, body)

        transport.route(STEPS_URL, handler)
        chain = make_pipeline(paths, transport, config).plan("release", 3, 17)

        assert [str(s) for s in chain] == ["3→17"]
        assert seen == {"os": "linux", "arch": "amd64", "branch": "release", "version": "3"}

    def test_no_request_when_already_there(self, paths, transport, config):
        assert make_pipeline(paths, transport, config).plan("release", 17, 17) == []
        assert transport.requests == []

    def test_endpoint_down_falls_back_to_direct_patch(self, paths, transport, config):
        transport.serve_json(STEPS_URL, {}, status=503)
        chain = make_pipeline(paths, transport, config).plan("release", 3, 17)
        assert len(chain) == 1
        assert chain[0].patch_url == f"{PATCH_BASE}/linux/amd64/release/3/17.pwr"
        assert chain[0].signature_url == ""

    def test_gap_falls_back_to_direct_patch(self, paths, transport, config):
        transport.serve_json(STEPS_URL, {"steps": [step_json(0, 5)]})
        chain = make_pipeline(paths, transport, config).plan("release", 0, 17)
        assert chain[0].patch_url.endswith("/release/0/17.pwr")

    def test_fallback_disabled_propagates(self, paths, transport, config):
        transport.serve_json(STEPS_URL, {}, status=503)
        with pytest.raises(NetworkError):
            make_pipeline(paths, transport, config, direct_patch_fallback=False).plan("release", 3, 17)

    def test_fallback_disabled_no_steps(self, paths, transport, config):
        transport.serve_json(STEPS_URL, {"steps": []})
        with pytest.raises(NetworkError, match="no patch steps"):
            make_pipeline(paths, transport, config, direct_patch_fallback=False).plan("release", 3, 17)

    def test_fallback_disabled_gap(self, paths, transport, config):
        transport.serve_json(STEPS_URL, {"steps": [step_json(0, 5)]})
        with pytest.raises(ValidationError):
            make_pipeline(paths, transport, config, direct_patch_fallback=False).plan("release", 0, 17)

    def test_malformed_steps(self, paths, transport, config):
        transport.serve_json(STEPS_URL, {"steps": [{"from": "x"}]})
        with pytest.raises(NetworkError, match="malformed"):
            make_pipeline(paths, transport, config).fetch_steps("release", 0)


# ── Applying ─────────────────────────────────────────────────────────


class TestApplyChain:
    def test_applies_steps_in_order(self, paths, transport, config, tmp_path: Path):
        serve_chain(transport, (0, 5), (5, 17))
        applier = MockApplier(produce_files=[CLIENT])
        target = tmp_path / "game"

        applied = make_pipeline(paths, transport, config, applier).apply_chain("release", 0, 17, target)

        assert [s.label for s in applied] == ["0_to_5", "5_to_17"]
        assert [c.step_id for c in applier.calls] == ["0_to_5", "5_to_17"]
        assert (target / CLIENT).read_text() == "5_to_17"

    def test_request_shape(self, paths, transport, config, tmp_path: Path):
        serve_chain(transport, (0, 17))
        applier = MockApplier(produce_files=[CLIENT])
        target = tmp_path / "game"
        make_pipeline(paths, transport, config, applier).apply_chain("release", 0, 17, target)

        request = applier.calls[0]
        assert request.patch_file.name == "0_to_17.pwr"
        assert request.signature_file.name == "0_to_17.pwr.sig"
        assert request.target_dir == target
        assert paths.staging_root in request.staging_dir.parents
        assert target not in request.staging_dir.parents

    def test_staging_fresh_and_removed(self, paths, transport, config, tmp_path: Path):
        serve_chain(transport, (0, 5), (5, 17))
        applier = MockApplier(produce_files=[CLIENT])
        make_pipeline(paths, transport, config, applier).apply_chain("release", 0, 17, tmp_path / "game")

        assert applier.staging_seen == [True, True]
        assert not any(paths.staging_root.iterdir())

    def test_patch_cache_discarded(self, paths, transport, config, tmp_path: Path):
        serve_chain(transport, (0, 17))
        make_pipeline(paths, transport, config).apply_chain("release", 0, 17, tmp_path / "game")
        assert not any(paths.patch_cache_dir.iterdir())

    def test_patch_cache_kept_when_configured(self, paths, transport, config, tmp_path: Path):
        serve_chain(transport, (0, 17))
        make_pipeline(paths, transport, config, keep_patch_cache=True).apply_chain(
            "release", 0, 17, tmp_path / "game"
        )
        assert (paths.patch_cache_dir / "0_to_17.pwr").read_bytes() == b"patch 0->17"
        assert (paths.patch_cache_dir / "0_to_17.pwr.sig").is_file()

    def test_published_checksum_enforced(self, paths, transport, config):
        serve_chain(transport, (0, 17))
        pipeline = make_pipeline(paths, transport, config)
        good = step(0, 17).model_copy(update={"sha256": sha256(b"patch 0->17")})
        bad = step(0, 17).model_copy(update={"sha256": "0" * 64})

        with pytest.raises(IntegrityError):
            pipeline.download_step(bad)
        patch, _ = pipeline.download_step(good)
        assert patch.read_bytes() == b"patch 0->17"

    def test_cached_files_not_downloaded(self, paths, transport, config, tmp_path: Path):
        serve_chain(transport, (0, 17))
        paths.patch_cache_dir.mkdir(parents=True)
        (paths.patch_cache_dir / "0_to_17.pwr").write_bytes(b"cached")
        (paths.patch_cache_dir / "0_to_17.pwr.sig").write_bytes(b"cached sig")

        make_pipeline(paths, transport, config).apply_chain("release", 0, 17, tmp_path / "game")

        assert transport.calls("GET", CDN) == []

    def test_reports_patch_stage(self, paths, transport, config, sink, tmp_path: Path):
        serve_chain(transport, (0, 5), (5, 17))
        make_pipeline(paths, transport, config).apply_chain(
            "release", 0, 17, tmp_path / "game", ProgressReporter(sink)
        )
        patch_events = [e for e in sink.events if e.stage == Stage.PATCH]
        assert patch_events[0].percent == 0.0
        assert patch_events[-1].percent == 100.0
        assert any(e.stage == Stage.DOWNLOAD for e in sink.events)

    def test_noop_chain(self, paths, transport, config, tmp_path: Path):
        applier = MockApplier()
        assert make_pipeline(paths, transport, config, applier).apply_chain("release", 17, 17, tmp_path / "g") == []
        assert applier.call_count == 0

    def test_cancelled_before_first_step(self, paths, transport, config, tmp_path: Path):
        serve_chain(transport, (0, 17))
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            make_pipeline(paths, transport, config).apply_chain("release", 0, 17, tmp_path / "game", cancel=token)


class TestSignatureMismatch:
    def test_wipes_tree_and_retries_once(self, paths, transport, config, tmp_path: Path):
        serve_chain(transport, (5, 17))
        target = tmp_path / "game"
        target.mkdir()
        (target / "user-mod.txt").write_text("out of band")
        applier = MockApplier([Outcome.SIGNATURE_MISMATCH], produce_files=[CLIENT])

        make_pipeline(paths, transport, config, applier).apply_chain("release", 5, 17, target)

        assert applier.call_count == 2
        assert not (target / "user-mod.txt").exists()
        assert (target / CLIENT).is_file()
        assert not any(paths.staging_root.iterdir())

    def test_second_mismatch_aborts_with_log(self, paths, transport, config, tmp_path: Path):
        serve_chain(transport, (5, 17))
        applier = MockApplier([Outcome.SIGNATURE_MISMATCH, Outcome.SIGNATURE_MISMATCH])

        with pytest.raises(ExternalToolError) as exc_info:
            make_pipeline(paths, transport, config, applier).apply_chain("release", 5, 17, tmp_path / "game")

        error = exc_info.value
        assert applier.call_count == 2
        assert len(error.attempts) == 2
        assert "retry:" in error.message
        assert error.log_path is not None and error.log_path.parent == paths.logs_dir
        log = error.log_path.read_text()
        assert "attempt 1" in log and "attempt 2" in log
        assert "signature mismatch" in log
        assert "branch: release" in log
        assert not any(paths.staging_root.iterdir())

    def test_other_failure_not_retried(self, paths, transport, config, tmp_path: Path):
        serve_chain(transport, (5, 17))
        target = tmp_path / "game"
        target.mkdir()
        (target / "keep.txt").write_text("x")
        applier = MockApplier([Outcome.FAILURE])

        with pytest.raises(ExternalToolError) as exc_info:
            make_pipeline(paths, transport, config, applier).apply_chain("release", 5, 17, target)

        assert applier.call_count == 1
        assert (target / "keep.txt").exists()
        assert exc_info.value.attempts == ["patch apply failed"]
        assert exc_info.value.log_path.is_file()

    def test_failure_stops_chain(self, paths, transport, config, tmp_path: Path):
        serve_chain(transport, (0, 5), (5, 17))
        applier = MockApplier([Outcome.FAILURE])
        with pytest.raises(ExternalToolError):
            make_pipeline(paths, transport, config, applier).apply_chain("release", 0, 17, tmp_path / "game")
        assert applier.call_count == 1
        assert transport.calls("GET", f"{CDN}/5_17") == []

    @pytest.mark.parametrize(
        "stderr, expected",
        [
            ("Error: signature mismatch on file foo", True),
            ("HASH MISMATCH for chunk 3", True),
            ("healing required", True),
            ("disk full", False),
        ],
    )
    def test_mismatch_heuristic(self, paths, transport, config, stderr, expected):
        receipt = Receipt.failure("butler", "5_to_17", error="exit code 1", stderr=stderr)
        assert make_pipeline(paths, transport, config).is_signature_mismatch(receipt) is expected
