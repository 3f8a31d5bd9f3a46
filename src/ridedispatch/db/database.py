"""Database engine initialization and connection management."""

from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from ridedispatch.settings import DatabaseSettings

from .schema import Base, LedgerMetadata

SCHEMA_VERSION = "1.0.0"


def _enable_sqlite_immediate_transactions(engine: Engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, so two transactions can both
    read a ride as REQUESTED before either writes. BEGIN IMMEDIATE serializes
    writers at transaction start, which is what SELECT ... FOR UPDATE gives on
    server databases.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Disable pysqlite's own BEGIN handling; the "begin" hook below owns it.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_ledger_engine(url: str, timeout_seconds: float = 5.0, echo: bool = False) -> Engine:
    """Create an engine whose every call is bounded by timeout_seconds."""
    if url.startswith("sqlite"):
        database = url.split("///", 1)[1] if "///" in url else ""
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
        )
        _enable_sqlite_immediate_transactions(engine)
        return engine

    timeout_ms = int(timeout_seconds * 1000)
    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_timeout=timeout_seconds,
        connect_args={
            "connect_timeout": max(1, int(timeout_seconds)),
            "options": f"-c lock_timeout={timeout_ms} -c statement_timeout={timeout_ms}",
        },
    )


def init_database(
    url: str,
    timeout_seconds: float = 5.0,
    echo: bool = False,
) -> sessionmaker[Any]:
    """Initialize the Ledger schema and return a session factory."""
    engine = create_ledger_engine(url, timeout_seconds, echo)
    Base.metadata.create_all(engine)

    session_maker = sessionmaker(bind=engine, expire_on_commit=False)

    with session_maker() as session:
        schema_version = session.get(LedgerMetadata, "schema_version")
        if not schema_version:
            session.add(LedgerMetadata(key="schema_version", value=SCHEMA_VERSION))
            session.commit()

    return session_maker


def init_database_from_settings(settings: DatabaseSettings) -> sessionmaker[Any]:
    return init_database(settings.url, settings.timeout_seconds, settings.echo)
