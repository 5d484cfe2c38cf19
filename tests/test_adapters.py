"""
Tests for adapters — HTTP transport, process runner, patch appliers.
"""

import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from src.adapters.http.transport import (
    UrllibTransport,
    classify_transport_error,
    get_json,
    head_ok,
    is_transient_exception,
    is_transient_status,
)
from src.adapters.mock import MockApplier, Outcome
from src.adapters.patching.butler import ButlerApplier, build_apply_command
from src.adapters.shell.command import CommandResult, is_functional, run_command
from src.core.errors import NetworkError, OperationCancelled
from src.core.models.receipt import ApplyRequest
from src.core.reliability.cancellation import CancelToken
from tests.fakes import FakeResponse, FakeTransport


def apply_request(tmp_path: Path, sig: bool = True) -> ApplyRequest:
    return ApplyRequest(
        step_id="0_to_17",
        patch_file=tmp_path / "0_to_17.pwr",
        target_dir=tmp_path / "game",
        staging_dir=tmp_path / "staging",
        signature_file=tmp_path / "0_to_17.pwr.sig" if sig else None,
    )


# ── HTTP transport ───────────────────────────────────────────────────


class _Handler(BaseHTTPRequestHandler):
    def do_HEAD(self):
        self.send_response(200 if self.path == "/patches/17.pwr" else 404)
        self.end_headers()

    def do_GET(self):
        if self.path == "/steps":
            body = b'{"steps": []}'
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
        else:
            self.send_response(404)
            self.send_header("Content-Length", "0")
            self.end_headers()

    def log_message(self, format, *args):
        pass


@pytest.fixture
def local_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


class TestUrllibTransport:
    def test_head_probe(self, local_server):
        transport = UrllibTransport()
        assert head_ok(transport, f"{local_server}/patches/17.pwr")
        assert not head_ok(transport, f"{local_server}/patches/18.pwr")

    def test_error_status_is_a_response(self, local_server):
        response = UrllibTransport().request("GET", f"{local_server}/missing")
        assert response.status == 404
        response.close()

    def test_get_json(self, local_server):
        assert get_json(UrllibTransport(), f"{local_server}/steps") == {"steps": []}

    def test_unreachable_raises(self):
        with pytest.raises(NetworkError):
            UrllibTransport().request("HEAD", "http://127.0.0.1:9/nothing", timeout=2)


class TestTransportHelpers:
    @pytest.mark.parametrize("status, transient", [(500, True), (503, True), (408, True), (429, True), (404, False), (403, False)])
    def test_transient_status(self, status, transient):
        assert is_transient_status(status) is transient

    def test_transient_exceptions(self):
        assert is_transient_exception(ConnectionResetError())
        assert is_transient_exception(TimeoutError())
        assert is_transient_exception(OSError("Broken pipe"))
        assert not is_transient_exception(OSError("Name or service not known"))

    def test_classify_keeps_network_errors(self):
        original = NetworkError("x", transient=True)
        assert classify_transport_error(original) is original

    def test_classify_wraps(self):
        error = classify_transport_error(ConnectionResetError("reset"), url="https://x")
        assert isinstance(error, NetworkError)
        assert error.transient
        assert "https://x" in error.message

    def test_get_json_bad_status(self):
        transport = FakeTransport()
        transport.serve_json("https://api.test/x", {}, status=502)
        with pytest.raises(NetworkError) as exc_info:
            get_json(transport, "https://api.test/x")
        assert exc_info.value.status == 502
        assert exc_info.value.transient

    def test_get_json_invalid_body(self):
        transport = FakeTransport()
        transport.route("https://api.test/x", lambda *_: FakeResponse(200, b"<html>"))
        with pytest.raises(NetworkError, match="invalid JSON"):
            get_json(transport, "https://api.test/x")

    def test_get_json_sends_payload(self):
        transport = FakeTransport()
        transport.serve_json("https://api.test/x", {"ok": True})
        get_json(transport, "https://api.test/x", payload={"branch": "release"})
        _, _, headers = transport.requests[0]
        assert headers["Content-Type"] == "application/json"


# ── Process runner ───────────────────────────────────────────────────


class TestRunCommand:
    def test_success(self):
        result = run_command([sys.executable, "-c", "print('hello')"])
        assert result.ok
        assert result.stdout.strip() == "hello"

    def test_failure_captured(self):
        result = run_command([sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"])
        assert not result.ok
        assert result.return_code == 3
        assert result.stderr == "bad"

    def test_missing_binary(self, tmp_path: Path):
        result = run_command([tmp_path / "nope"])
        assert not result.ok
        assert result.return_code is None
        assert result.error

    def test_timeout(self):
        result = run_command([sys.executable, "-c", "import time; time.sleep(10)"], timeout=0.3)
        assert result.timed_out
        assert not result.ok

    def test_cancel_kills_child(self):
        token = CancelToken()
        threading.Timer(0.2, token.cancel).start()
        with pytest.raises(OperationCancelled):
            run_command([sys.executable, "-c", "import time; time.sleep(10)"], cancel=token)

    def test_is_functional(self, tmp_path: Path):
        assert is_functional(Path(sys.executable), ["--version"])
        assert not is_functional(tmp_path / "absent", ["--version"])


# ── Butler applier ───────────────────────────────────────────────────


class TestButlerApplier:
    def test_command_with_signature(self, tmp_path: Path):
        cmd = build_apply_command(Path("/tools/butler"), apply_request(tmp_path))
        assert cmd == [
            "/tools/butler", "apply",
            "--staging-dir", str(tmp_path / "staging"),
            "--signature", str(tmp_path / "0_to_17.pwr.sig"),
            str(tmp_path / "0_to_17.pwr"), str(tmp_path / "game"),
        ]

    def test_command_without_signature(self, tmp_path: Path):
        cmd = build_apply_command(Path("/tools/butler"), apply_request(tmp_path, sig=False))
        assert "--signature" not in cmd

    def test_success_receipt(self, tmp_path: Path):
        def runner(cmd, timeout=None, cancel=None):
            return CommandResult(command=list(cmd), return_code=0, stdout="patched", elapsed_ms=12)

        receipt = ButlerApplier(tmp_path / "butler", runner=runner).apply(apply_request(tmp_path))
        assert receipt.ok
        assert receipt.adapter == "butler"
        assert receipt.duration_ms == 12
        assert receipt.stdout == "patched"

    def test_failure_receipt_uses_last_stderr_line(self, tmp_path: Path):
        def runner(cmd, timeout=None, cancel=None):
            return CommandResult(command=list(cmd), return_code=1, stderr="reading patch\nsignature mismatch\n")

        receipt = ButlerApplier(tmp_path / "butler", runner=runner).apply(apply_request(tmp_path))
        assert receipt.failed
        assert receipt.error == "signature mismatch"
        assert receipt.return_code == 1

    def test_spawn_error(self, tmp_path: Path):
        receipt = ButlerApplier(tmp_path / "missing-butler").apply(apply_request(tmp_path))
        assert receipt.failed
        assert receipt.error

    def test_is_available(self, tmp_path: Path):
        binary = tmp_path / "butler"
        applier = ButlerApplier(binary)
        assert not applier.is_available()
        binary.write_text("x")
        assert applier.is_available()


class TestMockApplier:
    def test_scripted_outcomes(self, tmp_path: Path):
        mock = MockApplier([Outcome.SIGNATURE_MISMATCH, Outcome.FAILURE], produce_files=["Client/GameClient"])
        request = apply_request(tmp_path)
        first, second, third = (mock.apply(request) for _ in range(3))
        assert first.failed and "signature mismatch" in first.stderr
        assert second.failed and second.return_code == 2
        assert third.ok
        assert (tmp_path / "game" / "Client" / "GameClient").read_text() == "0_to_17"
        assert mock.call_count == 3

    def test_cancelled(self, tmp_path: Path):
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            MockApplier().apply(apply_request(tmp_path), token)

    def test_reset(self, tmp_path: Path):
        mock = MockApplier([Outcome.FAILURE])
        mock.apply(apply_request(tmp_path))
        mock.reset()
        assert mock.call_count == 0
        assert mock.apply(apply_request(tmp_path)).ok
