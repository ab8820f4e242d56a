"""
Storage Package.

This package manages all data persistence of the engine.

Modules:
- database: engine, session factory, transaction boundaries
- models/: ORM records
- repositories/: data access layer
"""

from storage.database import (
    create_all_tables,
    create_session_factory,
    initialize_database,
    transaction_scope,
)


__all__ = [
    "create_all_tables",
    "create_session_factory",
    "initialize_database",
    "transaction_scope",
]
