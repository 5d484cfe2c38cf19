"""
Shared test fixtures.
"""

from pathlib import Path

import pytest

from src.core.config.paths import AppPaths
from src.core.config.schema import DiscoveryConfig, DownloadConfig, EndpointsConfig, EngineConfig, RuntimeConfig
from tests.fakes import MANIFEST_URL, PATCH_BASE, STEPS_URL, TOOL_URL, FakeRunner, FakeTransport, RecordingSink


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def config(tmp_path: Path) -> EngineConfig:
    """Engine config pointed at fake origins, with all delays zeroed."""
    return EngineConfig(
        app_dir=tmp_path / "app",
        endpoints=EndpointsConfig(
            patch_base_url=PATCH_BASE,
            patch_steps_url=STEPS_URL,
            runtime_manifest_url=MANIFEST_URL,
            tool_download_url=TOOL_URL,
        ),
        discovery=DiscoveryConfig(probe_delay=0.0),
        download=DownloadConfig(base_delay=0.0, progress_interval=0.0, chunk_size=4),
        runtime=RuntimeConfig(finalize_delay=0.0),
    )


@pytest.fixture
def paths(config: EngineConfig) -> AppPaths:
    return AppPaths.from_config(config, os_name="linux", arch="amd64")
