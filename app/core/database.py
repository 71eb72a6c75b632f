"""Database configuration and session management.

This module configures the SQLite database engine with settings suited to
a multi-request server that shares its store with the horizon scheduler.

SQLite Configuration Choices:
    - **WAL (Write-Ahead Logging)**: Allows concurrent readers while writing.
      Listings and feeds keep working while the scheduler inserts new
      instances for a series.

    - **Foreign Keys**: Disabled by default in SQLite. Deleting a calendar
      must cascade to its events, and deleting a series parent must cascade
      to every instance, so the pragma is enabled on every connection.

    - **check_same_thread=False**: Required for FastAPI. Sessions may be
      handed between threads by the dependency injection machinery and the
      scheduler's executor.

The ``(parent_id, occurrence_key)`` unique constraint is what makes
concurrent materialization safe; no in-process locking is done.
"""

from sqlalchemy import event as sa_event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from app.core.config import settings


def set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite pragmas on each new connection.

    These settings are connection-level, not database-level, so they must
    be set each time a new connection is established from the pool.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def configure_engine(engine: Engine) -> Engine:
    """Attach the connection listeners an engine needs for this app."""
    if engine.dialect.name == "sqlite":
        sa_event.listen(engine, "connect", set_sqlite_pragma)
    return engine


def build_engine(database_url: str, **kwargs) -> Engine:
    """Create an engine for ``database_url`` with the app's pragmas installed."""
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return configure_engine(create_engine(database_url, **kwargs))


engine = build_engine(
    settings.database_url,
    echo=settings.debug,  # Log SQL statements when DEBUG=true
)


def create_db_and_tables():
    """Create all database tables."""
    SQLModel.metadata.create_all(engine)


def get_session():
    """Dependency for getting database session.

    A request that fails rolls back everything it wrote.
    """
    with Session(engine) as session:
        try:
            yield session
        except Exception:
            session.rollback()
            raise
