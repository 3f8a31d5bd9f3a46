"""Tests for the notifier wrappers."""

import logging
from unittest.mock import Mock

import pytest

from ridedispatch.metrics import REGISTRY
from ridedispatch.notify.notifier import LoggingNotifier, SafeNotifier
from ridedispatch.ride import RideStatus


def _failures(event: str) -> float:
    return REGISTRY.get_sample_value(
        "dispatch_notifier_failures_total", {"event": event}
    ) or 0.0


@pytest.mark.unit
class TestSafeNotifier:
    def test_delivers_to_inner(self, make_ride):
        ride = make_ride()
        inner = Mock()

        SafeNotifier(inner).notify_status_changed(ride, RideStatus.ACCEPTED)

        inner.notify_status_changed.assert_called_once_with(ride, RideStatus.ACCEPTED)

    def test_failures_are_logged_and_counted(self, make_ride, caplog):
        ride = make_ride()
        inner = Mock()
        inner.notify_no_drivers.side_effect = RuntimeError("socket closed")
        before = _failures("no_drivers")

        with caplog.at_level(logging.ERROR):
            SafeNotifier(inner).notify_no_drivers(ride)

        assert _failures("no_drivers") == before + 1
        assert "no_drivers" in caplog.text

    def test_ride_taken_skips_empty_losers(self):
        inner = Mock()

        SafeNotifier(inner).notify_ride_taken(7, [])

        inner.notify_ride_taken.assert_not_called()


@pytest.mark.unit
class TestLoggingNotifier:
    def test_request_fanout_is_logged(self, make_ride, caplog):
        ride = make_ride()

        with caplog.at_level(logging.INFO, logger="ridedispatch.notify.notifier"):
            LoggingNotifier().notify_drivers_of_request(["d1", "d2"], ride, None, 30)

        assert f"Ride {ride.id} offered to 2 drivers (expires in 30s)" in caplog.text
