"""Tests for the Redis GEO driver index, against a mocked client."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ridedispatch.core.exceptions import DependencyUnavailable
from ridedispatch.geo.index import DriverLocation
from ridedispatch.geo.redis_index import RedisGeoIndex, _from_hash, _to_hash
from tests.conftest import NOW


def _hash(lat=4.86, lon=31.58, available="1", online="1", ride="", updated=NOW):
    return {
        "lat": repr(lat),
        "lon": repr(lon),
        "heading": "",
        "speed": "",
        "is_available": available,
        "is_online": online,
        "current_ride_id": ride,
        "last_updated": updated.isoformat(),
    }


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def index(client):
    return RedisGeoIndex(client, geo_key="drivers:geo", staleness_seconds=300)


@pytest.mark.unit
class TestRedisGeoIndex:
    def test_put_writes_geo_member_and_hash(self, index, client):
        pipe = client.pipeline.return_value
        location = DriverLocation(driver_id="d1", lat=4.86, lon=31.58, last_updated=NOW)

        index.put(location)

        pipe.geoadd.assert_called_once_with("drivers:geo", (31.58, 4.86, "d1"))
        pipe.hset.assert_called_once()
        assert pipe.hset.call_args.args[0] == "drivers:geo:driver:d1"
        pipe.execute.assert_called_once()

    def test_find_nearby_filters_undispatchable(self, index, client):
        client.geosearch.return_value = [("d1", 0.4), ("busy", 0.6), ("stale", 0.8), ("d2", 1.5)]
        client.pipeline.return_value.execute.return_value = [
            _hash(),
            _hash(ride="12", available="0"),
            _hash(updated=NOW - timedelta(seconds=400)),
            _hash(lat=4.87),
        ]

        results = index.find_nearby(4.85, 31.58, radius_km=8.0, limit=10, now=NOW)

        assert [(r.location.driver_id, r.distance_km) for r in results] == [("d1", 0.4), ("d2", 1.5)]
        kwargs = client.geosearch.call_args.kwargs
        assert kwargs["radius"] == 8.0
        assert kwargs["unit"] == "km"
        assert kwargs["sort"] == "ASC"

    def test_find_nearby_respects_limit(self, index, client):
        client.geosearch.return_value = [("d1", 0.1), ("d2", 0.2), ("d3", 0.3)]
        client.pipeline.return_value.execute.return_value = [_hash(), _hash(), _hash()]

        results = index.find_nearby(4.85, 31.58, radius_km=8.0, limit=2, now=NOW)

        assert [r.location.driver_id for r in results] == ["d1", "d2"]

    def test_redis_failure_becomes_dependency_unavailable(self, index, client):
        client.geosearch.side_effect = RedisConnectionError("down")

        with pytest.raises(DependencyUnavailable) as exc_info:
            index.find_nearby(4.85, 31.58, radius_km=8.0, limit=5, now=NOW)
        assert exc_info.value.dependency == "geo_index"

    def test_get_unknown_driver(self, index, client):
        client.hgetall.return_value = {}

        assert index.get("ghost") is None

    def test_assign_ride_rewrites_hash(self, index, client):
        client.hgetall.return_value = _hash()

        assert index.assign_ride("d1", 7, NOW) is True

        mapping = client.hset.call_args.kwargs["mapping"]
        assert mapping["current_ride_id"] == "7"
        assert mapping["is_available"] == "0"

    def test_hash_round_trip_keeps_optional_fields(self):
        location = DriverLocation(
            driver_id="d1",
            lat=4.86,
            lon=31.58,
            heading=None,
            speed=12.5,
            current_ride_id=None,
            last_updated=NOW,
        )

        assert _from_hash("d1", _to_hash(location)) == location
