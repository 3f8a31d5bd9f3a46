"""Tests for transaction utilities."""

import pytest
from sqlalchemy.exc import OperationalError

from ridedispatch.core.exceptions import DependencyUnavailable
from ridedispatch.db.schema import LedgerMetadata
from ridedispatch.db.transaction import savepoint, transaction


@pytest.mark.unit
class TestTransaction:
    def test_transaction_commits_on_success(self, session_maker):
        with session_maker() as session, transaction(session):
            session.add(LedgerMetadata(key="test_key", value="test_value"))

        with session_maker() as session:
            result = session.get(LedgerMetadata, "test_key")
            assert result is not None
            assert result.value == "test_value"

    def test_transaction_rolls_back_on_exception(self, session_maker):
        with (  # noqa: SIM117
            session_maker() as session,
            pytest.raises(ValueError, match="intentional error"),
        ):
            with transaction(session):
                session.add(LedgerMetadata(key="rollback_key", value="value"))
                session.flush()
                raise ValueError("intentional error")

        with session_maker() as session:
            assert session.get(LedgerMetadata, "rollback_key") is None

    def test_operational_errors_become_dependency_unavailable(self, session_maker):
        with session_maker() as session, pytest.raises(DependencyUnavailable) as exc_info:  # noqa: SIM117
            with transaction(session):
                raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))

        assert exc_info.value.dependency == "ledger"
        assert "database is locked" in exc_info.value.message

    def test_schema_version_seeded(self, session_maker):
        with session_maker() as session:
            assert session.get(LedgerMetadata, "schema_version").value == "1.0.0"


@pytest.mark.unit
class TestSavepoint:
    def test_savepoint_rollback_keeps_outer_work(self, session_maker):
        with session_maker() as session, transaction(session):
            session.add(LedgerMetadata(key="outer", value="kept"))
            with pytest.raises(ValueError):  # noqa: SIM117
                with savepoint(session):
                    session.add(LedgerMetadata(key="inner", value="dropped"))
                    session.flush()
                    raise ValueError("inner failure")

        with session_maker() as session:
            assert session.get(LedgerMetadata, "outer") is not None
            assert session.get(LedgerMetadata, "inner") is None
