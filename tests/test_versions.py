"""
Tests for version discovery — checkpoints, exponential + binary search,
caching, coalescing and listing.
"""

import threading

import pytest

from src.core.errors import NetworkError, NoVersionsError, OperationCancelled, ValidationError
from src.core.reliability.cancellation import CancelToken
from src.core.services.versions import VersionResolver
from tests.fakes import PATCH_BASE, FakeResponse, wait_for_waiters


def make_resolver(transport, config, clock=None) -> VersionResolver:
    kwargs = {"clock": clock} if clock else {}
    return VersionResolver(transport, config.discovery, config.endpoints, os_name="linux", arch="amd64", **kwargs)


def unreachable(method, url, headers, data):
    raise NetworkError("connection refused")


class TestProbeUrl:
    def test_layout(self, transport, config):
        resolver = make_resolver(transport, config)
        assert resolver.probe_url("release", 17) == f"{PATCH_BASE}/linux/amd64/release/0/17.pwr"

    def test_cache_key(self, transport, config):
        assert make_resolver(transport, config).cache_key("pre-release") == "linux-amd64-pre-release"


class TestFindLatest:
    @pytest.mark.parametrize("latest", [1, 3, 5, 9, 17, 25, 26, 100, 1500])
    def test_finds_highest(self, transport, config, latest):
        transport.serve_probes(lambda branch, v: 1 <= v <= latest)
        assert make_resolver(transport, config).find_latest("release") == latest

    def test_base_from_later_checkpoint(self, transport, config):
        transport.serve_probes(lambda branch, v: 10 <= v <= 42)
        assert make_resolver(transport, config).find_latest("release") == 42

    def test_nothing_published(self, transport, config):
        transport.serve_probes(lambda branch, v: False)
        with pytest.raises(NoVersionsError):
            make_resolver(transport, config).find_latest("release")

    def test_unreachable_is_network_error(self, transport, config):
        transport.route_prefix(PATCH_BASE, unreachable)
        with pytest.raises(NetworkError) as exc_info:
            make_resolver(transport, config).find_latest("release")
        assert not isinstance(exc_info.value, NoVersionsError)

    def test_only_head_requests(self, transport, config):
        transport.serve_probes(lambda branch, v: v <= 17)
        make_resolver(transport, config).find_latest("release")
        assert transport.requests
        assert all(method == "HEAD" for method, _, _ in transport.requests)

    def test_branches_independent(self, transport, config):
        transport.serve_probes(lambda branch, v: v <= (17 if branch == "release" else 4))
        resolver = make_resolver(transport, config)
        assert resolver.find_latest("release") == 17
        assert resolver.find_latest("pre-release") == 4

    def test_cancelled(self, transport, config):
        transport.serve_probes(lambda branch, v: v <= 17)
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            make_resolver(transport, config).find_latest("release", token)


class TestCaching:
    def test_second_call_served_from_cache(self, transport, config):
        transport.serve_probes(lambda branch, v: v <= 17)
        resolver = make_resolver(transport, config)
        resolver.find_latest("release")
        before = len(transport.requests)
        assert resolver.find_latest("release") == 17
        assert len(transport.requests) == before

    def test_expiry_reprobes_only_negatives(self, transport, config):
        clock = FakeClock()
        transport.serve_probes(lambda branch, v: v <= 17)
        resolver = make_resolver(transport, config, clock)
        resolver.find_latest("release")
        before = len(transport.requests)

        clock.now += config.discovery.cache_ttl + 1
        assert resolver.find_latest("release") == 17
        new = transport.requests[before:]
        assert new
        probed = {int(url.rsplit("/", 1)[-1].split(".")[0]) for _, url, _ in new}
        assert all(v > 17 for v in probed)

    def test_errors_not_cached(self, transport, config):
        state = {"up": False}

        def handler(method, url, headers, data):
            if not state["up"]:
                raise NetworkError("connection refused")
            version = int(url.rsplit("/", 1)[-1].split(".")[0])
            return FakeResponse(200 if version <= 17 else 404)

        transport.route_prefix(PATCH_BASE, handler)
        resolver = make_resolver(transport, config)
        with pytest.raises(NetworkError):
            resolver.find_latest("release")
        state["up"] = True
        assert resolver.find_latest("release") == 17

    def test_clear_cache(self, transport, config):
        transport.serve_probes(lambda branch, v: v <= 17)
        resolver = make_resolver(transport, config)
        resolver.find_latest("release")
        before = len(transport.requests)
        resolver.clear_cache()
        resolver.find_latest("release")
        assert len(transport.requests) > before

    def test_concurrent_calls_probe_once(self, transport, config):
        transport.serve_probes(lambda branch, v: v <= 300)
        reference = make_resolver(transport, config)
        reference.find_latest("release")
        single_run = len(transport.requests)
        transport.requests.clear()

        resolver = make_resolver(transport, config)
        results = []
        threads = [threading.Thread(target=lambda: results.append(resolver.find_latest("release"))) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert results == [300] * 8
        assert len(transport.requests) == single_run

    def test_cancelling_one_caller_spares_the_other(self, transport, config):
        entered = threading.Event()
        gate = threading.Event()

        def exists(branch, v):
            if not entered.is_set():
                entered.set()
                gate.wait(5)
            return v <= 17

        transport.serve_probes(exists)
        resolver = make_resolver(transport, config)
        first_token = CancelToken()
        outcome = {}

        def first():
            try:
                resolver.find_latest("release", first_token)
            except OperationCancelled as e:
                outcome["first"] = e

        def second():
            outcome["second"] = resolver.find_latest("release", CancelToken())

        t1 = threading.Thread(target=first)
        t1.start()
        assert entered.wait(5)
        t2 = threading.Thread(target=second)
        t2.start()
        wait_for_waiters(resolver._flight_latest, resolver.cache_key("release"), 1)

        first_token.cancel()
        gate.set()
        t1.join(10)
        t2.join(10)

        assert isinstance(outcome["first"], OperationCancelled)
        assert outcome["second"] == 17


class TestListing:
    def test_lists_contiguous(self, transport, config):
        transport.serve_probes(lambda branch, v: 1 <= v <= 6)
        assert make_resolver(transport, config).list_available_versions("release") == [1, 2, 3, 4, 5, 6]

    def test_lists_with_gaps(self, transport, config):
        published = {1, 2, 4, 7}
        transport.serve_probes(lambda branch, v: v in published)
        assert make_resolver(transport, config).list_available_versions("release") == [1, 2, 4, 7]

    def test_listing_cached(self, transport, config):
        transport.serve_probes(lambda branch, v: v <= 6)
        resolver = make_resolver(transport, config)
        resolver.list_available_versions("release")
        before = len(transport.requests)
        resolver.list_available_versions("release")
        assert len(transport.requests) == before

    def test_both_branches_collects_errors(self, transport, config):
        def handler(method, url, headers, data):
            if "/pre-release/" in url:
                raise NetworkError("connection refused")
            version = int(url.rsplit("/", 1)[-1].split(".")[0])
            return FakeResponse(200 if version <= 3 else 404)

        transport.route_prefix(PATCH_BASE, handler)
        listing = make_resolver(transport, config).list_both_branches()
        assert listing.versions["release"] == [1, 2, 3]
        assert listing.versions["pre-release"] == []
        assert "pre-release" in listing.errors
        assert not listing.ok


class TestVerifyVersionExists:
    def test_present(self, transport, config):
        transport.serve_probes(lambda branch, v: v <= 17)
        make_resolver(transport, config).verify_version_exists("release", 12)

    def test_missing(self, transport, config):
        transport.serve_probes(lambda branch, v: v <= 17)
        with pytest.raises(ValidationError, match="not found"):
            make_resolver(transport, config).verify_version_exists("release", 99)

    @pytest.mark.parametrize("version", [0, -4])
    def test_invalid(self, transport, config, version):
        with pytest.raises(ValidationError, match="invalid version"):
            make_resolver(transport, config).verify_version_exists("release", version)
        assert transport.requests == []


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now
