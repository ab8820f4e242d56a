"""
Storage Models Package.

ORM models for the trading engine database.

============================================================
MODEL ORGANIZATION
============================================================
base.py      - Base, UTCDateTime
enums.py     - closed enumerations for status/tag columns
trading.py   - TradePlan, Position, Trade, Order,
               ConditionalOrder, PairLock, AuditLogEntry,
               PortfolioSnapshot
============================================================
"""

from storage.models.base import Base, UTCDateTime
from storage.models.enums import (
    AccountType,
    AuditCategory,
    AuditEventType,
    AuditSeverity,
    ConditionalOrderStatus,
    GLOBAL_LOCK_SYMBOL,
    LockReason,
    LockSide,
    OrderStatus,
    OrderTag,
    OrderType,
    PlanStatus,
    TradeSide,
    TriggerType,
)
from storage.models.trading import (
    AuditLogEntry,
    ConditionalOrder,
    Order,
    PairLock,
    PortfolioSnapshot,
    Position,
    Trade,
    TradePlan,
)


__all__ = [
    "Base",
    "UTCDateTime",
    "AccountType",
    "AuditCategory",
    "AuditEventType",
    "AuditSeverity",
    "ConditionalOrderStatus",
    "GLOBAL_LOCK_SYMBOL",
    "LockReason",
    "LockSide",
    "OrderStatus",
    "OrderTag",
    "OrderType",
    "PlanStatus",
    "TradeSide",
    "TriggerType",
    "AuditLogEntry",
    "ConditionalOrder",
    "Order",
    "PairLock",
    "PortfolioSnapshot",
    "Position",
    "Trade",
    "TradePlan",
]
