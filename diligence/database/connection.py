"""
Database Connection Management

Engine and session handling for PostgreSQL in production and SQLite
locally.

Design Decisions:
-----------------
1. Connection pooling on server databases; SQLite gets a thread-shareable
   connection instead (jobs run on one event loop, the outbox worker may
   run on another thread)
2. Context managers: rollback on error, always close
3. Pre-ping: Verify connections before use
4. Injectable session factories: tests and the CLI bind their own database
"""

from contextlib import contextmanager
from typing import Callable, Generator, Optional
import logging

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from config.settings import settings

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def create_db_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Create SQLAlchemy engine.

    Server databases:
    - Pool size: 10 connections, 20 overflow
    - Pre-ping: Test connection before use
    - Pool recycle: Refresh connections every hour

    SQLite:
    - ``check_same_thread`` disabled, foreign keys enforced
    """
    url = url or settings.DATABASE_URL
    echo = settings.DATABASE_ECHO if echo is None else echo

    if url.startswith("sqlite"):
        engine = create_engine(url, echo=echo, future=True, connect_args={"check_same_thread": False})

        @event.listens_for(engine, "connect")
        def enable_foreign_keys(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=echo,
        future=True
    )

    @event.listens_for(engine, "connect")
    def receive_connect(dbapi_conn, connection_record):
        logger.debug("Database connection established")

    return engine


def create_session_factory(url: Optional[str] = None, create_tables: bool = False) -> sessionmaker:
    """
    Session factory bound to its own engine.

    Example:
        >>> factory = create_session_factory("sqlite:///./test.db", create_tables=True)
        >>> with get_db(factory) as db:
        ...     db.execute(text("SELECT 1"))
    """
    bound_engine = create_db_engine(url)
    if create_tables:
        from diligence.database.models import Base
        Base.metadata.create_all(bind=bound_engine)
    return sessionmaker(bind=bound_engine, autocommit=False, autoflush=False, expire_on_commit=False,
                        future=True)


# Global engine instance
engine = create_db_engine()

# Session factory
SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,  # Explicit commit required
    autoflush=False,
    expire_on_commit=False,
    future=True
)


@contextmanager
def get_db(session_factory: Optional[SessionFactory] = None) -> Generator[Session, None, None]:
    """
    Get database session with automatic cleanup.

    Commits happen in the calling code; any exception rolls back and
    propagates.

    Example:
        >>> with get_db() as db:
        ...     job = ResearchJobRepository.get_by_id(db, job_id)
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
    except Exception as e:
        db.rollback()
        logger.error(f"Database error, rolling back: {e}")
        raise
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None):
    """
    Create all tables that do not exist yet. Idempotent.
    """
    from diligence.database.models import Base

    try:
        Base.metadata.create_all(bind=bind or engine)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create database tables: {e}")
        raise


def drop_all_tables(bind: Optional[Engine] = None):
    """
    Drop all database tables.

    WARNING: This deletes ALL data! Use only in development/testing.
    """
    from diligence.database.models import Base

    logger.warning("Dropping all database tables...")
    Base.metadata.drop_all(bind=bind or engine)
    logger.warning("All tables dropped")


def check_connection(session_factory: Optional[SessionFactory] = None) -> bool:
    """
    Test database connection.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        with get_db(session_factory) as db:
            db.execute(text("SELECT 1"))
        logger.info("Database connection verified")
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False


__all__ = [
    "engine",
    "SessionLocal",
    "SessionFactory",
    "create_db_engine",
    "create_session_factory",
    "get_db",
    "init_db",
    "drop_all_tables",
    "check_connection"
]
