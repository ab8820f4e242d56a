"""
Shared Test Fixtures.

============================================================
PURPOSE
============================================================
In-memory database sessions and a controllable clock for the
engine test suite.

- session: SQLite in-memory, one connection shared through
  StaticPool, schema created fresh per test
- clock: MockClock pinned to a Monday afternoon (UTC)

============================================================
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.clock import MockClock
from storage.models import Base


START_TIME = datetime(2026, 1, 5, 14, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_engine():
    """Create an in-memory database with every table."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(db_engine):
    """Create a database session."""
    factory = sessionmaker(bind=db_engine, expire_on_commit=False)
    db = factory()
    yield db
    db.close()


@pytest.fixture
def clock():
    """Create a mock clock at a fixed time."""
    return MockClock(START_TIME)
