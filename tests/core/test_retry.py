"""Tests for retry utilities."""

from unittest.mock import MagicMock

import pytest

from ridedispatch.core.exceptions import DependencyUnavailable, ValidationError
from ridedispatch.core.retry import RetryConfig, with_retry_sync
from ridedispatch.metrics import REGISTRY
from ridedispatch.settings import RetrySettings


@pytest.mark.unit
class TestRetryConfig:
    def test_default_config(self):
        config = RetryConfig()
        assert config.max_attempts == 3
        assert config.base_delay == 0.1
        assert config.multiplier == 2.0
        assert config.max_delay == 5.0


@pytest.mark.unit
class TestWithRetrySync:
    def test_returns_on_first_success(self):
        operation = MagicMock(return_value="ok")
        sleep = MagicMock()

        assert with_retry_sync(operation, sleep=sleep) == "ok"
        assert operation.call_count == 1
        sleep.assert_not_called()

    def test_retries_transient_errors_with_backoff(self):
        operation = MagicMock(
            side_effect=[DependencyUnavailable("geo_index"), DependencyUnavailable("geo_index"), 42]
        )
        sleep = MagicMock()
        config = RetryConfig(max_attempts=3, base_delay=0.1, multiplier=2.0)

        assert with_retry_sync(operation, config, sleep=sleep) == 42
        assert operation.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == pytest.approx([0.1, 0.2])

    def test_raises_after_exhausting_attempts(self):
        operation = MagicMock(side_effect=DependencyUnavailable("geo_index"))
        sleep = MagicMock()

        with pytest.raises(DependencyUnavailable):
            with_retry_sync(operation, RetryConfig(max_attempts=2), sleep=sleep)
        assert operation.call_count == 2
        assert sleep.call_count == 1

    def test_permanent_errors_are_not_retried(self):
        operation = MagicMock(side_effect=ValidationError("bad"))
        sleep = MagicMock()

        with pytest.raises(ValidationError):
            with_retry_sync(operation, sleep=sleep)
        assert operation.call_count == 1
        sleep.assert_not_called()

    def test_delay_is_capped(self):
        operation = MagicMock(side_effect=[DependencyUnavailable("x")] * 3 + ["done"])
        sleep = MagicMock()
        config = RetryConfig(max_attempts=4, base_delay=1.0, multiplier=10.0, max_delay=2.0)

        with_retry_sync(operation, config, sleep=sleep)
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 2.0]

    def test_retries_are_counted_per_store(self):
        before = REGISTRY.get_sample_value(
            "dispatch_store_retries_total", {"store": "geo_index"}
        ) or 0.0
        operation = MagicMock(side_effect=[DependencyUnavailable("geo_index"), "ok"])

        with_retry_sync(operation, RetryConfig(base_delay=0.0), sleep=MagicMock())

        after = REGISTRY.get_sample_value("dispatch_store_retries_total", {"store": "geo_index"})
        assert after == before + 1


@pytest.mark.unit
def test_config_from_settings():
    config = RetryConfig.from_settings(RetrySettings(max_attempts=5, base_delay=0.2, multiplier=3.0))

    assert config.max_attempts == 5
    assert config.delay_for(0) == pytest.approx(0.2)
    assert config.delay_for(1) == pytest.approx(0.6)
