import pytest
from pydantic import ValidationError

from ridedispatch.settings import DispatchSettings, FareSettings, RedisSettings, Settings


@pytest.mark.unit
class TestSettings:
    def test_defaults(self):
        settings = DispatchSettings()
        assert settings.request_ttl_seconds == 30
        assert settings.max_drivers_to_notify == 5
        assert settings.search_radius_km == 8.0

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("DISPATCH_REQUEST_TTL_SECONDS", "45")
        assert DispatchSettings().request_ttl_seconds == 45

    def test_nested_env(self, monkeypatch):
        monkeypatch.setenv("DISPATCH__GEO_INDEX_BACKEND", "redis")
        assert Settings().dispatch.geo_index_backend == "redis"

    def test_ttl_bounds(self):
        with pytest.raises(ValidationError):
            DispatchSettings(request_ttl_seconds=1)

    def test_redis_prefix_must_end_with_colon(self):
        with pytest.raises(ValidationError, match="must end with"):
            RedisSettings(key_prefix="ride")

    def test_fare_tables_cover_every_ride_type(self):
        with pytest.raises(ValidationError, match="missing ride types"):
            FareSettings(cost_per_km={"standard": 300})

    def test_minimum_fare_not_below_base(self):
        with pytest.raises(ValidationError):
            FareSettings(base_fare=2000, minimum_fare=1000)
