"""
Database initialization and connection management utilities.

This module provides functions for initializing the state database,
managing connections, and creating sessions with proper pooling and
thread safety. Engines are cached per database URL so several state stores
(and test fixtures) can coexist in one process.
"""

import threading
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, event, pool
from sqlalchemy.orm import Session, sessionmaker

from migrate_bridge.exceptions import ConfigurationError, StorageError
from migrate_bridge.migration.models import Base
from migrate_bridge.utils.logging import get_logger

logger = get_logger(__name__)

_engines: dict[str, Engine] = {}
_session_factories: dict[str, sessionmaker] = {}
_engine_lock = threading.Lock()


def _configure_sqlite_connection(dbapi_conn, connection_record):
    """
    Enable foreign keys and a busy timeout for SQLite connections.

    SQLite has foreign keys disabled by default and fails immediately on a
    locked database unless told to wait.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_database_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
) -> Engine:
    """
    Create a SQLAlchemy engine with appropriate settings.

    Args:
        database_url: Database connection URL (sqlite:/// or postgresql://)
        echo: Whether to log SQL statements (useful for debugging)
        pool_size: Number of connections to maintain in the pool
        max_overflow: Maximum number of connections beyond pool_size
        pool_timeout: Timeout for getting a connection from the pool (seconds)

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If database URL is invalid
    """
    if not database_url:
        raise ConfigurationError("Database URL cannot be empty")

    try:
        is_sqlite = database_url.startswith("sqlite")

        if is_sqlite:
            # NullPool avoids sharing SQLite connections across threads
            engine = create_engine(
                database_url,
                echo=echo,
                poolclass=pool.NullPool,
                connect_args={"check_same_thread": False},
            )
            event.listen(engine, "connect", _configure_sqlite_connection)
        else:
            engine = create_engine(
                database_url,
                echo=echo,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_pre_ping=True,
            )

        logger.debug(
            "database_engine_created",
            database_type="sqlite" if is_sqlite else engine.dialect.name,
        )
        return engine

    except Exception as e:
        logger.error("database_engine_failed", error=str(e), database_url=database_url)
        raise ConfigurationError(f"Failed to create database engine: {e}") from e


def init_database(database_url: str, echo: bool = False, **pool_options: int) -> Engine:
    """
    Initialize the state database.

    Creates all tables if they don't exist. This is idempotent and safe to
    call multiple times; the engine is created once per URL.

    Args:
        database_url: Database connection URL
        echo: Whether to log SQL statements
        **pool_options: pool_size, max_overflow, pool_timeout

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If database initialization fails
    """
    with _engine_lock:
        engine = _engines.get(database_url)
        if engine is not None:
            return engine

        engine = create_database_engine(database_url, echo=echo, **pool_options)
        try:
            Base.metadata.create_all(engine)
        except Exception as e:
            engine.dispose()
            logger.error("database_init_failed", error=str(e), database_url=database_url)
            raise ConfigurationError(f"Failed to initialize database: {e}") from e

        _engines[database_url] = engine
        _session_factories[database_url] = sessionmaker(bind=engine, expire_on_commit=False)

        logger.info(
            "database_initialized",
            database_url=database_url,
            tables=len(Base.metadata.tables),
        )
        return engine


def get_engine(database_url: str) -> Engine:
    """Return the engine for a URL, initializing the database on first use."""
    engine = _engines.get(database_url)
    if engine is None:
        engine = init_database(database_url)
    return engine


@contextmanager
def get_session(database_url: str) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Automatically commits on success and rolls back on exception. Always
    closes the session when done.

    Usage:
        with get_session(url) as session:
            session.add(obj)

    Args:
        database_url: Database connection URL

    Yields:
        SQLAlchemy Session instance

    Raises:
        StorageError: If the database operation fails
    """
    get_engine(database_url)
    session = _session_factories[database_url]()

    try:
        yield session
        session.commit()

    except StorageError:
        # Already meaningful to callers (e.g. DuplicateDestinationError)
        session.rollback()
        raise

    except Exception as e:
        session.rollback()
        logger.debug("database_session_rolled_back", error=str(e))
        raise StorageError(f"Database operation failed: {e}") from e

    finally:
        session.close()


def dispose_engines() -> None:
    """Dispose every cached engine and forget it."""
    with _engine_lock:
        for engine in _engines.values():
            engine.dispose()
        _engines.clear()
        _session_factories.clear()
