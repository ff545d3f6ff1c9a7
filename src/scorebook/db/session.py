"""
Database session management for Scorebook.

Provides SQLAlchemy engine and session factory with proper
connection pooling configuration. Uses the settings from config.py.

Usage:
    # As a context manager (recommended for scripts)
    from scorebook.db import get_session

    with get_session() as session:
        service = IdentityService(session, collections)
        service.resolve("Alice")
        # Commits automatically on exit, rolls back on exception

    # Request-scoped sessions for whatever web layer sits on top
    from scorebook.db import get_db
"""

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from scorebook.config import settings


def create_db_engine(
    database_url: str,
    echo: bool = False,
    sqlite_immediate: bool = False,
    **kwargs,
) -> Engine:
    """
    Create an engine for the given URL.

    SQLite (used by tests and local tooling) gets two connection tweaks:
    foreign keys are switched on, and pysqlite's own transaction handling is
    replaced by explicit BEGIN so that SAVEPOINT works. Resolver race
    recovery and per-collection propagation both depend on savepoints.

    With sqlite_immediate, transactions open with BEGIN IMMEDIATE. A SQLite
    file written from several threads or processes needs this: a deferred
    transaction that reads and then writes fails with "database is locked"
    when another writer got in between, while an immediate one waits for
    the lock (up to the connection's busy timeout).
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(database_url, echo=echo, **kwargs)
        begin_statement = "BEGIN IMMEDIATE" if sqlite_immediate else "BEGIN"

        @event.listens_for(engine, "connect")
        def on_connect(dbapi_conn, connection_record):
            """Called when a new connection is created."""
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def on_begin(conn):
            conn.exec_driver_sql(begin_statement)

        return engine

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connection is alive before using
        echo=echo,
        **kwargs,
    )


def get_engine() -> Engine:
    """
    Create SQLAlchemy engine with connection pooling.

    The engine is configured with:
    - Connection pool for efficient reuse
    - Echo mode disabled (set LOG_LEVEL=DEBUG for SQL logging)
    - Pre-ping to verify connections before use (handles stale connections)
    """
    if settings.database_url.startswith("sqlite"):
        return create_db_engine(
            settings.database_url,
            echo=settings.log_level == "DEBUG",
            sqlite_immediate=settings.sqlite_begin_immediate,
        )
    return create_db_engine(
        settings.database_url,
        echo=settings.log_level == "DEBUG",  # Log SQL only in debug mode
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )


# Created on first use so importing the package never opens a connection pool
_engine: Optional[Engine] = None


def _get_engine() -> Engine:
    """Get or create the singleton engine instance."""
    global _engine
    if _engine is None:
        _engine = get_engine()
        SessionLocal.configure(bind=_engine)
    return _engine


# Session factory - bound to our engine on first use
SessionLocal = sessionmaker(
    autocommit=False,  # We'll handle commits explicitly
    autoflush=False,  # Don't auto-flush before queries (more control)
)


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Automatically commits on successful exit, rolls back on exception.
    This is the recommended way to use sessions in scripts.

    Example:
        with get_session() as session:
            identity = session.get(PlayerIdentity, 42)
            identity.display_name = "Alice"
            # Commits automatically when exiting the block

    Raises:
        Any exception from the database operation (after rollback)
    """
    _get_engine()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    """
    Request-scoped session generator.

    Commits are left to the caller (IdentityService commits its own work).
    """
    _get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
