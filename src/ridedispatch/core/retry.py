"""Backoff for store calls that may fail transiently.

Only the post-commit GeoIndex writes go through here. Ledger transactions
are never retried by the core: a conflict is an answer, not a fault, and a
Ledger timeout is reported to the caller as DependencyUnavailable.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

from ridedispatch.metrics import store_retries

from .exceptions import TransientError

if TYPE_CHECKING:
    from ridedispatch.settings import RetrySettings

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 0.1
    multiplier: float = 2.0
    max_delay: float = 5.0
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (TransientError,)
    )

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryConfig":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            multiplier=settings.multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given zero-based failed attempt."""
        return min(self.base_delay * (self.multiplier**attempt), self.max_delay)


def with_retry_sync(
    operation: Callable[[], T],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call operation until it succeeds or the attempts run out.

    Non-retryable exceptions propagate on the first failure; the last
    retryable one propagates once attempts are exhausted.
    """
    config = config or RetryConfig()

    attempt = 0
    while True:
        try:
            return operation()
        except config.retryable_exceptions as e:
            store = getattr(e, "dependency", "unknown")
            attempt += 1
            if attempt >= config.max_attempts:
                logger.error(f"{operation_name} gave up on {store} after {attempt} attempts: {e}")
                raise

            delay = config.delay_for(attempt - 1)
            store_retries.labels(store=store).inc()
            logger.warning(
                f"{operation_name} failed on {store} ({attempt}/{config.max_attempts}), "
                f"retrying in {delay:.2f}s"
            )
            sleep(delay)
