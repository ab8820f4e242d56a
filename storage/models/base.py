"""
Base ORM Model and Column Types.

============================================================
PURPOSE
============================================================
Provides the declarative base used by all ORM models of the
trading engine, plus the column types shared between them.

============================================================
COMPONENTS
============================================================
- UTCDateTime: timezone-aware datetime column that behaves the
  same on PostgreSQL and SQLite (which drops tzinfo)
- Base: SQLAlchemy declarative base for all models

============================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import DateTime
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Datetime column that always round-trips as aware UTC.

    Values are stored as naive UTC and re-tagged with UTC on load,
    so comparisons against the engine clock never mix naive and
    aware datetimes.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect: Dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """
    Declarative base for all ORM models.

    All models of the engine inherit from this base, which gives a
    single metadata object for table creation in tests and
    migrations.
    """

    type_annotation_map = {
        datetime: UTCDateTime(),
    }

    def to_dict(self) -> Dict[str, Any]:
        """Column values keyed by attribute name, for reporting and broadcast."""
        result: Dict[str, Any] = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif hasattr(value, "value"):
                value = value.value
            result[column.key] = value
        return result
