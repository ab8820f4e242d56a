"""
Closed enumerations for persisted status and tag columns.

Every status-like column of the trading tables stores one of these
values as a plain string. Repositories validate against these
enums before writing, so a column can never widen silently.
"""

from enum import Enum
from typing import Set, Type


class TradeSide(str, Enum):
    """Direction of a plan or fill."""

    BUY = "BUY"
    SELL = "SELL"


class AccountType(str, Enum):
    """Broker account a trade is booked against."""

    INVEST = "INVEST"
    ISA = "ISA"


class PlanStatus(str, Enum):
    """Trade plan lifecycle."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    EXPIRED = "expired"

    def is_terminal(self) -> bool:
        return self in (PlanStatus.REJECTED, PlanStatus.EXECUTED, PlanStatus.EXPIRED)

    def is_live(self) -> bool:
        return self in (PlanStatus.PENDING, PlanStatus.APPROVED)


class OrderStatus(str, Enum):
    """Broker instruction status."""

    PENDING = "pending"
    OPEN = "open"
    FILLED = "filled"
    PARTIALLY_FILLED = "partially_filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (
            OrderStatus.FILLED,
            OrderStatus.CANCELLED,
            OrderStatus.EXPIRED,
            OrderStatus.FAILED,
        )

    def is_active(self) -> bool:
        return self in (OrderStatus.PENDING, OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED)


class OrderTag(str, Enum):
    """Why an order exists."""

    ENTRY = "entry"
    EXIT = "exit"
    DCA = "dca"
    STOPLOSS = "stoploss"
    TAKE_PROFIT = "take_profit"
    PARTIAL_EXIT = "partial_exit"

    def is_protective(self) -> bool:
        return self in (OrderTag.STOPLOSS, OrderTag.TAKE_PROFIT)


class OrderType(str, Enum):
    """Broker order type."""

    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"


class TriggerType(str, Enum):
    """What fires a conditional order."""

    PRICE_ABOVE = "price_above"
    PRICE_BELOW = "price_below"
    TIME = "time"
    INDICATOR = "indicator"


class ConditionalOrderStatus(str, Enum):
    """Conditional order lifecycle."""

    PENDING = "pending"
    TRIGGERED = "triggered"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class LockReason(str, Enum):
    """Why a pair lock was created."""

    COOLDOWN = "cooldown"
    STOPLOSS_GUARD = "stoploss_guard"
    MAX_DRAWDOWN = "max_drawdown"
    LOW_PROFIT = "low_profit"
    MANUAL = "manual"


class LockSide(str, Enum):
    """Direction a pair lock applies to."""

    ANY = "*"
    LONG = "long"
    SHORT = "short"


class AuditEventType(str, Enum):
    TRADE = "trade"
    SIGNAL = "signal"
    RISK = "risk"
    CONTROL = "control"
    CONFIG = "config"
    ERROR = "error"


class AuditCategory(str, Enum):
    EXECUTION = "execution"
    ANALYSIS = "analysis"
    RISK = "risk"
    SYSTEM = "system"
    USER = "user"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


GLOBAL_LOCK_SYMBOL = "*"
"""Pair-lock symbol that blocks every symbol."""


def enum_values(enum_cls: Type[Enum]) -> Set[str]:
    """String values of a closed enumeration."""
    return {member.value for member in enum_cls}
