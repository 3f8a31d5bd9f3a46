"""Tests for RedisCoordinationCache against a mocked client."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ridedispatch.cache.redis_cache import RedisCoordinationCache
from ridedispatch.core.exceptions import DependencyUnavailable
from tests.conftest import NOW


@pytest.fixture
def mock_redis():
    return MagicMock()


@pytest.fixture
def cache(mock_redis):
    return RedisCoordinationCache(mock_redis, key_prefix="t:")


@pytest.mark.unit
class TestRedisCoordinationCache:
    def test_put_requests_uses_one_pipeline(self, cache, mock_redis):
        pipe = mock_redis.pipeline.return_value

        cache.put_requests(7, ["d1", "d2"], ttl_seconds=30)

        assert pipe.set.call_count == 3
        for call in pipe.set.call_args_list:
            assert call.kwargs["ex"] == 30
        pipe.execute.assert_called_once()

    def test_claim_is_set_nx_ex(self, cache, mock_redis):
        mock_redis.set.return_value = True

        assert cache.claim("accepted:7", "d1", 30) is True

        args, kwargs = mock_redis.set.call_args
        assert args[1] == "d1"
        assert kwargs == {"nx": True, "ex": 30}

    def test_claim_lost(self, cache, mock_redis):
        mock_redis.set.return_value = None

        assert cache.claim("accepted:7", "d2", 30) is False

    def test_has_request(self, cache, mock_redis):
        mock_redis.get.return_value = "pending"
        assert cache.has_request(7, "d1") is True

        mock_redis.get.return_value = None
        assert cache.has_request(7, "d1") is False

    def test_request_deadline_is_stored_and_checked(self, cache, mock_redis):
        pipe = mock_redis.pipeline.return_value
        deadline = NOW + timedelta(seconds=30)

        cache.put_requests(7, ["d1"], ttl_seconds=30, expires_at=deadline)

        assert pipe.set.call_args_list[0].args == ("t:7:d1", deadline.isoformat())
        mock_redis.get.return_value = deadline.isoformat()
        assert cache.has_request(7, "d1", NOW + timedelta(seconds=30)) is True
        assert cache.has_request(7, "d1", NOW + timedelta(seconds=31)) is False

    def test_ride_drivers(self, cache, mock_redis):
        mock_redis.get.return_value = "d1,d2"
        assert cache.ride_drivers(7) == ["d1", "d2"]

        mock_redis.get.return_value = None
        assert cache.ride_drivers(7) is None

    def test_clear_ride_deletes_ride_and_request_keys(self, cache, mock_redis):
        mock_redis.get.return_value = "d1,d2"

        cache.clear_ride(7)

        deleted = mock_redis.delete.call_args.args
        assert len(deleted) == 3

    @pytest.mark.parametrize("error", [RedisConnectionError("down"), RedisTimeoutError("slow")])
    def test_redis_errors_become_dependency_unavailable(self, cache, mock_redis, error):
        mock_redis.get.side_effect = error

        with pytest.raises(DependencyUnavailable) as exc_info:
            cache.has_request(7, "d1")

        assert exc_info.value.dependency == "coordination_cache"
