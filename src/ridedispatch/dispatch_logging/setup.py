"""Root logger configuration for processes embedding the dispatch core."""

import logging
import sys

from .context import ContextFilter
from .filters import PIIFilter
from .formatters import DevFormatter, JSONFormatter

QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "redis")


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    environment: str = "development",
) -> None:
    """Install a single stdout handler on the root logger, replacing earlier ones."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(environment) if json_output else DevFormatter())
    handler.addFilter(PIIFilter())
    handler.addFilter(ContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
