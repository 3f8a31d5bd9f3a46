"""Unit-of-work helpers around Ledger sessions.

Driver-level failures (lock waits past the configured timeout, dropped
connections, an exhausted pool) leave this module as DependencyUnavailable,
so callers above the repositories only ever see dispatch errors.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from ridedispatch.core.exceptions import DependencyUnavailable
from ridedispatch.metrics import observe_store_latency

_LEDGER_FAILURES = (OperationalError, PoolTimeoutError)


def _ledger_unavailable(error: Exception) -> DependencyUnavailable:
    cause = getattr(error, "orig", None) or error
    return DependencyUnavailable("ledger", f"Ledger operation failed: {cause}")


@contextmanager
def transaction(session: Session) -> Generator[Session]:
    """Run the block as one Ledger transaction.

    Example:
        with session_factory() as session, transaction(session):
            rides.apply_transition(ride_id, StartedPayload(), now)
            TrackingRepository(session).start(ride_id, now)

    Raises:
        DependencyUnavailable: If the database timed out or is unreachable
    """
    try:
        yield session
        with observe_store_latency("ledger"):
            session.commit()
    except _LEDGER_FAILURES as e:
        session.rollback()
        raise _ledger_unavailable(e) from e
    except Exception:
        session.rollback()
        raise


@contextmanager
def savepoint(session: Session) -> Generator[Session]:
    """Nested unit inside an open transaction; a failure undoes only this block."""
    nested = session.begin_nested()
    try:
        yield session
        nested.commit()
    except _LEDGER_FAILURES as e:
        nested.rollback()
        raise _ledger_unavailable(e) from e
    except Exception:
        nested.rollback()
        raise
