"""
Repository Layer Package.

============================================================
PURPOSE
============================================================
The Repository Layer is the ONLY gateway to persistent storage.
All database access goes through repository classes.

============================================================
ARCHITECTURE PRINCIPLES
============================================================
1. One repository per record type
2. Session injection: sessions are injected, not created internally
3. Explicit methods, filter/order/limit only
4. Status columns validated against closed enums, never widened
5. Status transitions by compare-and-swap
6. All DB errors wrapped in repository exceptions

============================================================
USAGE
============================================================

    from storage.repositories import TradePlanRepository

    repo = TradePlanRepository(session)
    plan = repo.transition_status(plan_id, "pending", "approved")
    repo.commit()

============================================================
"""

from storage.repositories.exceptions import (
    DatabaseConnectionError,
    DuplicateRecordError,
    InvalidStatusError,
    QueryError,
    RecordNotFoundError,
    RepositoryException,
    TransactionError,
)
from storage.repositories.base import BaseRepository
from storage.repositories.monitoring import AuditLogRepository
from storage.repositories.orders import ConditionalOrderRepository, OrderRepository
from storage.repositories.planning import PLAN_TRANSITIONS, TradePlanRepository
from storage.repositories.positions import PositionRepository, TradeRepository
from storage.repositories.risk import PairLockRepository, PortfolioSnapshotRepository


__all__ = [
    "DatabaseConnectionError",
    "DuplicateRecordError",
    "InvalidStatusError",
    "QueryError",
    "RecordNotFoundError",
    "RepositoryException",
    "TransactionError",
    "BaseRepository",
    "AuditLogRepository",
    "ConditionalOrderRepository",
    "OrderRepository",
    "PLAN_TRANSITIONS",
    "TradePlanRepository",
    "PositionRepository",
    "TradeRepository",
    "PairLockRepository",
    "PortfolioSnapshotRepository",
]
