"""
Storage - Database Engine and Sessions.

============================================================
RESPONSIBILITY
============================================================
Creates the SQLAlchemy engine and session factory and provides
explicit transaction boundaries.

- PostgreSQL in production (DATABASE_URL)
- SQLite in-memory for tests and paper runs
- Explicit commit / rollback, hard failure on persistence errors

============================================================
USAGE
============================================================
    factory = create_session_factory(get_database_url())
    create_all_tables(factory)

    with transaction_scope(factory) as session:
        PositionRepository(session).get_all()

============================================================
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from storage.models.base import Base


load_dotenv()

logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite:///trading_engine.db"


class DatabasePersistenceError(Exception):
    """Raised when a transaction cannot be persisted."""


# =============================================================
# ENGINE
# =============================================================


def get_database_url() -> str:
    """Database URL from the environment, async drivers mapped to sync ones."""
    url = os.getenv("DATABASE_URL_SYNC") or os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql+asyncpg"):
        url = url.replace("postgresql+asyncpg", "postgresql")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")

    return url


def create_database_engine(url: str, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine.

    In-memory SQLite shares one connection across the process so
    every session sees the same tables.
    """
    logger.info(f"Creating database engine for: {url.split('@')[-1]}")

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
    else:
        engine = create_engine(
            url,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
            echo=echo,
        )

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        logger.debug("Database connection established")

    return engine


def create_session_factory(url: Optional[str] = None, echo: bool = False) -> sessionmaker:
    """Session factory bound to a new engine for ``url``."""
    engine = create_database_engine(url or get_database_url(), echo=echo)
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


# =============================================================
# SESSION MANAGEMENT
# =============================================================


@contextmanager
def transaction_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Session whose work is committed on success and rolled back on any error.
    """
    session = factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {e}")
        session.rollback()
        raise DatabasePersistenceError(f"Transaction failed: {e}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================
# INITIALIZATION
# =============================================================


def verify_database_connection(factory: sessionmaker) -> bool:
    """Run ``SELECT 1``; raises DatabasePersistenceError when unreachable."""
    try:
        with factory.kw["bind"].connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        logger.info("Database connection verified successfully")
        return True
    except OperationalError as e:
        logger.error(f"Database connection failed: {e}")
        raise DatabasePersistenceError(f"Cannot connect to database: {e}") from e


def create_all_tables(factory: sessionmaker) -> None:
    """Create every table registered on the declarative base."""
    # Registers the models on Base.metadata
    from storage.models import trading  # noqa: F401

    try:
        Base.metadata.create_all(bind=factory.kw["bind"])
        logger.info("Database tables created successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}")
        raise DatabasePersistenceError(f"Table creation failed: {e}") from e


def initialize_database(url: Optional[str] = None) -> sessionmaker:
    """Connect, create tables and return the session factory. Aborts on failure."""
    logger.info("=" * 60)
    logger.info("INITIALIZING DATABASE")
    logger.info("=" * 60)

    factory = create_session_factory(url)
    try:
        verify_database_connection(factory)
        create_all_tables(factory)
    except Exception as e:
        logger.critical(f"DATABASE INITIALIZATION FAILED: {e}")
        raise

    return factory


__all__ = [
    "DEFAULT_DATABASE_URL",
    "DatabasePersistenceError",
    "get_database_url",
    "create_database_engine",
    "create_session_factory",
    "transaction_scope",
    "verify_database_connection",
    "create_all_tables",
    "initialize_database",
]
