"""JSON and console formatters."""

import json
import logging
from datetime import UTC, datetime

from .context import RIDE_FIELDS


def _ride_fields(record: logging.LogRecord) -> dict[str, object]:
    return {
        name: getattr(record, name)
        for name in RIDE_FIELDS
        if getattr(record, name, None) not in (None, "-")
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line with ride fields as top-level keys."""

    def __init__(self, environment: str = "development", service: str = "ridedispatch"):
        super().__init__()
        self.environment = environment
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
            "env": self.environment,
            **_ride_fields(record),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class DevFormatter(logging.Formatter):
    """Single-line console format; ride fields appear after the logger name."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s [%(levelname)8s] %(name)s%(ride_tags)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        tags = " ".join(f"{k.removesuffix('_id')}={v}" for k, v in _ride_fields(record).items())
        record.ride_tags = f" [{tags}]" if tags else ""
        return super().format(record)
