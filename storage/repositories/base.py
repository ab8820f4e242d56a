"""
Base Repository Class.

============================================================
PURPOSE
============================================================
Common functionality for all repositories:
- Session handling (session injected via constructor)
- Wrapping SQLAlchemy errors in repository exceptions
- Closed-enum validation of status columns
- Compare-and-swap status updates

============================================================
USAGE
============================================================
    class OrderRepository(BaseRepository[Order]):
        def __init__(self, session: Session):
            super().__init__(session, Order, "OrderRepository")

============================================================
"""

import logging
from abc import ABC
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from storage.models.base import Base
from storage.models.enums import enum_values
from storage.repositories.exceptions import (
    DatabaseConnectionError,
    DuplicateRecordError,
    InvalidStatusError,
    QueryError,
    RecordNotFoundError,
    TransactionError,
)


T = TypeVar("T", bound=Base)


class BaseRepository(ABC, Generic[T]):
    """
    Abstract base class for all repositories.

    Repositories flush but never commit on their own; the caller
    owns the transaction and calls ``commit()`` at the end of a
    unit of work.
    """

    def __init__(
        self,
        session: Session,
        model_class: Type[T],
        repository_name: str
    ) -> None:
        self._session = session
        self._model_class = model_class
        self._repository_name = repository_name
        self._logger = logging.getLogger(f"repository.{repository_name}")

    @property
    def session(self) -> Session:
        return self._session

    @property
    def repository_name(self) -> str:
        return self._repository_name

    # =========================================================
    # PUBLIC
    # =========================================================

    def get(self, record_id: int) -> Optional[T]:
        return self._get_by_id(record_id)

    def get_or_raise(self, record_id: int) -> T:
        entity = self._get_by_id(record_id)
        if entity is None:
            raise RecordNotFoundError(self._repository_name, record_id)
        return entity

    def count(self) -> int:
        return self._count()

    def commit(self) -> None:
        self._commit()

    def rollback(self) -> None:
        self._rollback()

    # =========================================================
    # PROTECTED HELPERS
    # =========================================================

    def _handle_db_error(
        self,
        error: Exception,
        operation: str,
        context: Optional[dict] = None
    ) -> None:
        """Re-raise a SQLAlchemy error as the matching repository exception."""
        self._logger.error(f"Database error in {operation}: {error} {context or {}}")

        if isinstance(error, OperationalError):
            raise DatabaseConnectionError(
                message=str(error),
                repository_name=self._repository_name,
                operation=operation,
            ) from error

        if isinstance(error, IntegrityError):
            error_str = str(error).lower()
            if "duplicate" in error_str or "unique" in error_str:
                field = (context or {}).get("field", "unknown")
                raise DuplicateRecordError(
                    repository_name=self._repository_name,
                    constraint_field=field,
                    value=(context or {}).get("value", "unknown"),
                ) from error

        raise QueryError(
            message=str(error),
            repository_name=self._repository_name,
            operation=operation,
            details=context,
        ) from error

    def _validate_enum(self, field: str, value: Any, enum_cls: Type[Enum]) -> str:
        """
        Normalize ``value`` to the string value of ``enum_cls``.

        Accepts enum members or their string values (case-insensitive);
        anything else raises InvalidStatusError.
        """
        if isinstance(value, enum_cls):
            return value.value

        allowed = enum_values(enum_cls)
        if isinstance(value, str):
            if value in allowed:
                return value
            for candidate in allowed:
                if candidate.lower() == value.lower():
                    return candidate

        raise InvalidStatusError(self._repository_name, field, value, allowed)

    def _add(self, entity: T, context: Optional[dict] = None) -> T:
        try:
            self._session.add(entity)
            self._session.flush()
            self._logger.debug(f"Added entity: {entity}")
            return entity
        except SQLAlchemyError as e:
            self._session.rollback()
            self._handle_db_error(e, "add", context)
            raise

    def _delete(self, entity: T) -> None:
        try:
            self._session.delete(entity)
            self._session.flush()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "delete")
            raise

    def _flush(self) -> None:
        try:
            self._session.flush()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "flush")
            raise

    def _get_by_id(self, record_id: int) -> Optional[T]:
        try:
            return self._session.get(self._model_class, record_id)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "get_by_id", {"id": record_id})
            raise

    def _count(self, *criteria: Any) -> int:
        try:
            stmt = select(func.count()).select_from(self._model_class)
            if criteria:
                stmt = stmt.where(*criteria)
            return self._session.execute(stmt).scalar() or 0
        except SQLAlchemyError as e:
            self._handle_db_error(e, "count")
            raise

    def _execute_query(self, stmt: Any) -> List[T]:
        try:
            return list(self._session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "query")
            raise

    def _execute_scalar(self, stmt: Any) -> Optional[T]:
        try:
            return self._session.execute(stmt).scalars().first()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "query_scalar")
            raise

    def _compare_and_swap(
        self,
        record_id: int,
        expected: str,
        values: Dict[str, Any],
        status_field: str = "status",
    ) -> Optional[T]:
        """
        Update ``values`` only while ``status_field`` still equals ``expected``.

        Returns the refreshed entity when the row was updated, None when
        another writer moved the status first (or the row is gone).
        """
        self._flush()
        column = getattr(self._model_class, status_field)
        stmt = (
            update(self._model_class)
            .where(self._model_class.id == record_id, column == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self._session.execute(stmt)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "compare_and_swap", {"id": record_id})
            raise

        if result.rowcount != 1:
            self._logger.debug(
                f"CAS on id={record_id} skipped: {status_field} is no longer '{expected}'"
            )
            return None

        entity = self._get_by_id(record_id)
        if entity is not None:
            self._session.refresh(entity)
        return entity

    def _commit(self) -> None:
        try:
            self._session.commit()
        except SQLAlchemyError as e:
            self._session.rollback()
            raise TransactionError(
                message=str(e),
                repository_name=self._repository_name,
                operation="commit",
            ) from e

    def _rollback(self) -> None:
        try:
            self._session.rollback()
        except SQLAlchemyError as e:
            self._logger.error(f"Rollback failed: {e}")
            raise TransactionError(
                message=str(e),
                repository_name=self._repository_name,
                operation="rollback",
            ) from e
