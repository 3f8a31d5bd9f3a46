"""Tests for the in-memory coordination cache."""

from datetime import timedelta

import pytest

from ridedispatch.cache.coordination import InMemoryCoordinationCache, accepted_marker
from tests.conftest import NOW, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return InMemoryCoordinationCache(clock=clock)


@pytest.mark.unit
class TestRequestMirror:
    def test_put_and_lookup(self, cache):
        cache.put_requests(7, ["d1", "d2"], ttl_seconds=30)

        assert cache.has_request(7, "d1")
        assert not cache.has_request(7, "d3")
        assert cache.ride_drivers(7) == ["d1", "d2"]

    def test_entries_expire_at_ttl(self, cache, clock):
        cache.put_requests(7, ["d1"], ttl_seconds=30)

        clock.advance(29)
        assert cache.has_request(7, "d1")

        clock.advance(1)
        assert not cache.has_request(7, "d1")
        assert cache.ride_drivers(7) is None

    def test_stored_deadline_bounds_lookups(self, cache):
        cache.put_requests(7, ["d1"], ttl_seconds=30, expires_at=NOW + timedelta(seconds=30))

        assert cache.has_request(7, "d1", NOW + timedelta(seconds=30))
        assert not cache.has_request(7, "d1", NOW + timedelta(seconds=31))

    def test_writes_prune_expired_keys(self, cache, clock):
        cache.put_requests(7, ["d1", "d2"], ttl_seconds=30)
        cache.claim(accepted_marker(7), "d1", 30)

        clock.advance(31)
        cache.claim(accepted_marker(8), "d3", 30)

        assert list(cache._entries) == ["ride:requests:claim:accepted:8"]

    def test_drop_request_keeps_siblings(self, cache):
        cache.put_requests(7, ["d1", "d2"], ttl_seconds=30)
        cache.drop_request(7, "d1")

        assert not cache.has_request(7, "d1")
        assert cache.has_request(7, "d2")

    def test_clear_ride_removes_only_that_ride(self, cache):
        cache.put_requests(7, ["d1", "d2"], ttl_seconds=30)
        cache.put_requests(70, ["d1"], ttl_seconds=30)

        cache.clear_ride(7)

        assert cache.ride_drivers(7) is None
        assert not cache.has_request(7, "d2")
        assert cache.has_request(70, "d1")


@pytest.mark.unit
class TestClaims:
    def test_first_claim_wins(self, cache):
        assert cache.claim(accepted_marker(7), "d1", 30) is True
        assert cache.claim(accepted_marker(7), "d2", 30) is False
        assert cache.holder(accepted_marker(7)) == "d1"

    def test_claim_frees_after_ttl(self, cache, clock):
        cache.claim("lock", "a", 10)
        clock.advance(10)

        assert cache.holder("lock") is None
        assert cache.claim("lock", "b", 10) is True
