"""Ride-scoped logging fields.

Fields live in a ContextVar, so every record logged inside a
``log_ride_context`` block is tagged with the ride, including records from
repositories and adapters that never see the ride id. Worker threads start
with an empty context.
"""

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType
from typing import Any

RIDE_FIELDS = ("ride_id", "driver_id", "rider_id", "correlation_id")

_fields: ContextVar[Mapping[str, Any]] = ContextVar(
    "dispatch_log_fields", default=MappingProxyType({})
)


def current_fields() -> dict[str, Any]:
    return dict(_fields.get())


def get_current_correlation_id() -> str | None:
    value = _fields.get().get("correlation_id")
    return None if value is None else str(value)


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Add fields for the duration of the block; inner blocks override, then restore."""
    token = _fields.set(MappingProxyType({**_fields.get(), **fields}))
    try:
        yield
    finally:
        _fields.reset(token)


@contextmanager
def log_ride_context(ride_id: int | str, **fields: Any) -> Iterator[None]:
    """Tag records with a ride. The ride id is the correlation id unless one is given."""
    fields.setdefault("correlation_id", str(ride_id))
    with log_context(ride_id=ride_id, **fields):
        yield


class ContextFilter(logging.Filter):
    """Copies the active context onto each record; correlation_id falls back to "-"."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _fields.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        if not hasattr(record, "correlation_id"):
            record.correlation_id = "-"
        return True
