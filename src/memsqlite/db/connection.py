"""
Database connection management for memsqlite.

Builds SQLite engines whose every connection runs with write-ahead logging,
foreign-key enforcement and a busy timeout, and provides session and
transaction helpers on top of a single pooled connection.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Union

from sqlalchemy import Connection, Engine, create_engine, event, text
from sqlalchemy.orm import Session
from sqlalchemy.pool import NullPool

from memsqlite.models.db import Base

logger = logging.getLogger(__name__)


def _apply_pragmas(
    dbapi_connection: sqlite3.Connection, busy_timeout_ms: int, readonly: bool
) -> None:
    cursor = dbapi_connection.cursor()
    try:
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
        except sqlite3.OperationalError as e:
            # WAL is a property of the database file; a read-only handle
            # cannot switch it and relies on the writer having done so
            if not readonly:
                raise
            logger.debug(f"Read-only handle kept existing journal mode: {e}")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        cursor.execute("PRAGMA synchronous=NORMAL")
        if readonly:
            cursor.execute("PRAGMA query_only=ON")
    finally:
        cursor.close()


def create_db_engine(
    database_path: Union[str, Path],
    busy_timeout_ms: int = 30_000,
    readonly: bool = False,
    echo: bool = False,
) -> Engine:
    """
    Create a SQLite engine for the given database file.

    Connection reuse is handled by ``memsqlite.db.pool.ConnectionPool``, so the
    engine itself does no pooling (NullPool).

    Args:
        database_path: Path to the SQLite file
        busy_timeout_ms: How long a handle waits on a locked database
        readonly: Open handles with ``mode=ro`` and ``query_only``
        echo: Log emitted SQL

    Returns:
        Engine: Configured SQLAlchemy engine
    """
    path = Path(database_path).expanduser()
    if readonly:
        url = f"sqlite:///file:{path.resolve()}?mode=ro&uri=true"
    else:
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{path}"

    engine = create_engine(
        url,
        echo=echo,
        poolclass=NullPool,
        connect_args={
            "check_same_thread": False,
            "timeout": busy_timeout_ms / 1000,
        },
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works under pysqlite
        dbapi_connection.isolation_level = None
        _apply_pragmas(dbapi_connection, busy_timeout_ms, readonly)

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        # Writers take the RESERVED lock up front so contention surfaces
        # at BEGIN, before any work is done
        conn.exec_driver_sql("BEGIN" if readonly else "BEGIN IMMEDIATE")

    return engine


def init_db(engine: Engine) -> None:
    """
    Create all tables and indexes if they do not exist yet.

    Args:
        engine: Writable engine for the target database
    """
    Base.metadata.create_all(bind=engine)
    logger.info(f"Database schema ready at {engine.url.database}")


def check_connection(engine: Engine) -> bool:
    """
    Check if the database connection is working.

    Returns:
        bool: True if connection is successful, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False


@contextmanager
def transaction(connection: Connection) -> Generator[Session, None, None]:
    """
    Run ORM work inside one transaction on an already-acquired connection.

    Commits on success, rolls back on any exception and re-raises it.

    Yields:
        Session: ORM session bound to ``connection``

    Example:
        >>> with transaction(conn) as session:
        >>>     session.add(record)
    """
    session = Session(bind=connection, autoflush=False, expire_on_commit=False)
    try:
        with session.begin():
            yield session
    finally:
        session.close()
