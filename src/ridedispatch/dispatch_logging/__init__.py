from .context import get_current_correlation_id, log_context, log_ride_context
from .setup import setup_logging

__all__ = ["get_current_correlation_id", "log_context", "log_ride_context", "setup_logging"]
