"""
Repository Layer Exceptions.

============================================================
PURPOSE
============================================================
Repositories catch SQLAlchemy errors and re-raise them as one of
these exceptions, tagged with the repository and operation.

Engine services treat a RepositoryException as an infrastructure
failure for the symbol being processed: it is logged and the
batch moves on to the next symbol.

============================================================
"""

from typing import Any, Iterable, Optional


class RepositoryException(Exception):
    """Base exception for all repository operations."""

    def __init__(
        self,
        message: str,
        repository_name: str,
        operation: str,
        details: Optional[dict] = None
    ) -> None:
        self.message = message
        self.repository_name = repository_name
        self.operation = operation
        self.details = details or {}
        super().__init__(f"[{repository_name}] {operation}: {message}")


class RecordNotFoundError(RepositoryException):
    """A record that must exist could not be found."""

    def __init__(self, repository_name: str, record_id: Any, id_field: str = "id") -> None:
        super().__init__(
            message=f"Record with {id_field}={record_id} not found",
            repository_name=repository_name,
            operation="get",
            details={id_field: str(record_id)}
        )
        self.record_id = record_id


class DuplicateRecordError(RepositoryException):
    """A unique constraint was violated (e.g. a second position for a symbol)."""

    def __init__(self, repository_name: str, constraint_field: str, value: Any) -> None:
        super().__init__(
            message=f"Duplicate record: {constraint_field}={value} already exists",
            repository_name=repository_name,
            operation="create",
            details={"field": constraint_field, "value": str(value)}
        )
        self.constraint_field = constraint_field
        self.value = value


class DatabaseConnectionError(RepositoryException):
    """The database could not be reached."""


class QueryError(RepositoryException):
    """A statement failed for a reason other than connectivity or constraints."""


class TransactionError(RepositoryException):
    """Commit or rollback failed."""


class InvalidStatusError(RepositoryException):
    """
    A status value is outside its closed enumeration.

    Status columns are never silently widened: an unknown value is
    a programming or data error, not a new state.
    """

    def __init__(
        self,
        repository_name: str,
        field: str,
        value: Any,
        allowed: Iterable[str]
    ) -> None:
        super().__init__(
            message=f"Invalid {field} '{value}', expected one of {sorted(allowed)}",
            repository_name=repository_name,
            operation="validate",
            details={"field": field, "value": str(value)}
        )
        self.field = field
        self.value = value
