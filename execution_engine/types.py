"""
Execution Engine - Types.

============================================================
PURPOSE
============================================================
Request and result types for the Order Manager.

CRITICAL PRINCIPLE:
    "Broker failures are values, not exceptions."
    Every request yields an ExecutionResult; callers mark the
    attempt failed without crashing the loop.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from storage.models.enums import AccountType, OrderTag, TradeSide


# ============================================================
# RESULT CODES
# ============================================================

class ExecutionResultCode(Enum):
    """Outcome of an execution request."""

    SUCCESS = "SUCCESS"
    """Order filled and records written."""

    REJECTED = "REJECTED"
    """Broker rejected or cancelled the order."""

    PARTIAL_FILL = "PARTIAL_FILL"
    """Order only partially filled; position state untouched."""

    TIMEOUT = "TIMEOUT"
    """No terminal state within the order timeout."""

    BROKER_ERROR = "BROKER_ERROR"
    """Broker unreachable or returned an error."""

    DUPLICATE_POSITION = "DUPLICATE_POSITION"
    """A position already exists for the symbol."""

    NO_POSITION = "NO_POSITION"
    """No position to close or reduce."""

    INVALID_REQUEST = "INVALID_REQUEST"
    """Request failed basic validation (e.g. non-positive shares)."""

    def is_success(self) -> bool:
        return self == ExecutionResultCode.SUCCESS


# ============================================================
# REQUESTS
# ============================================================

@dataclass
class BuyRequest:
    """Open a new position."""

    symbol: str
    ticker: str
    shares: float
    price: float
    """Intended entry price."""

    stop_loss_pct: float
    take_profit_pct: float

    conviction: float = 0.0
    reasoning: str = ""
    model_name: Optional[str] = None
    account_type: AccountType = AccountType.INVEST
    plan_id: Optional[int] = None
    sector: Optional[str] = None

    exit_conditions: Optional[Dict[str, Any]] = None
    """Model exit conditions stored on the position."""

    max_hold_days: Optional[int] = None


@dataclass
class CloseRequest:
    """Close a position fully."""

    symbol: str
    reason: str
    price: Optional[float] = None
    """Intended exit price; defaults to the position's current price."""

    account_type: AccountType = AccountType.INVEST


@dataclass
class FillReport:
    """What an execution strategy reports back for one order."""

    code: ExecutionResultCode
    broker_order_id: Optional[str] = None
    fill_price: Optional[float] = None
    filled_quantity: float = 0.0
    message: str = ""

    @property
    def filled(self) -> bool:
        return self.code == ExecutionResultCode.SUCCESS


# ============================================================
# RESULT
# ============================================================

@dataclass
class ExecutionResult:
    """
    Execution result returned by the Order Manager.

    On failure nothing about the position has changed; only the
    Order record carries the failure.
    """

    code: ExecutionResultCode
    symbol: str
    side: TradeSide
    tag: OrderTag

    order_id: Optional[int] = None
    """Local Order record id."""

    broker_order_id: Optional[str] = None
    trade_id: Optional[int] = None

    requested_quantity: float = 0.0
    filled_quantity: float = 0.0
    intended_price: Optional[float] = None
    fill_price: Optional[float] = None
    slippage: Optional[float] = None
    """Intended price minus fill price."""

    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None

    message: str = ""
    timestamp: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.code.is_success()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "symbol": self.symbol,
            "side": self.side.value,
            "tag": self.tag.value,
            "order_id": self.order_id,
            "broker_order_id": self.broker_order_id,
            "trade_id": self.trade_id,
            "requested_quantity": self.requested_quantity,
            "filled_quantity": self.filled_quantity,
            "intended_price": self.intended_price,
            "fill_price": self.fill_price,
            "slippage": self.slippage,
            "pnl": self.pnl,
            "pnl_pct": self.pnl_pct,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
