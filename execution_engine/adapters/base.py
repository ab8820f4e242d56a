"""
Execution Engine - Broker Adapter Base.

============================================================
PURPOSE
============================================================
Abstract interface for broker adapters.

DESIGN PRINCIPLES:
- Broker-agnostic interface
- Clean separation from execution bookkeeping
- Fully testable with the mock adapter
- Decimal quantities and prices at this boundary only

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from storage.models.enums import OrderStatus, OrderType, TradeSide


logger = logging.getLogger(__name__)


# ============================================================
# STATUS MAPPING
# ============================================================

def map_broker_status_to_order_status(status: Optional[str]) -> OrderStatus:
    """
    Map a broker status string to OrderStatus.

    Unknown statuses map to OPEN so the order keeps being polled
    until it times out.
    """
    if not status:
        return OrderStatus.OPEN

    mapping = {
        "NEW": OrderStatus.OPEN,
        "OPEN": OrderStatus.OPEN,
        "WORKING": OrderStatus.OPEN,
        "CONFIRMED": OrderStatus.OPEN,
        "PARTIALLY_FILLED": OrderStatus.PARTIALLY_FILLED,
        "PARTIAL": OrderStatus.PARTIALLY_FILLED,
        "FILLED": OrderStatus.FILLED,
        "CANCELED": OrderStatus.CANCELLED,
        "CANCELLED": OrderStatus.CANCELLED,
        "REJECTED": OrderStatus.CANCELLED,
        "EXPIRED": OrderStatus.EXPIRED,
    }
    return mapping.get(status.upper(), OrderStatus.OPEN)


def is_rejection(status: Optional[str]) -> bool:
    return bool(status) and status.upper() == "REJECTED"


# ============================================================
# REQUEST / RESPONSE TYPES
# ============================================================

@dataclass
class SubmitOrderRequest:
    """Request to submit an order."""

    symbol: str
    """Broker ticker."""

    side: TradeSide
    """Order side."""

    order_type: OrderType
    """Order type."""

    quantity: Decimal
    """Order quantity."""

    price: Optional[Decimal] = None
    """Limit price."""

    stop_price: Optional[Decimal] = None
    """Stop/trigger price."""

    time_validity: str = "DAY"
    """DAY or GTC."""

    client_order_id: Optional[str] = None
    """Client order ID for idempotency."""


@dataclass
class SubmitOrderResponse:
    """Response from order submission."""

    success: bool
    """Whether the broker accepted the order."""

    broker_order_id: Optional[str] = None
    status: Optional[str] = None
    filled_quantity: Decimal = Decimal("0")
    average_price: Optional[Decimal] = None

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    raw_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryOrderRequest:
    """Request to query order status."""

    broker_order_id: str


@dataclass
class QueryOrderResponse:
    """Response from order query."""

    found: bool
    broker_order_id: Optional[str] = None
    symbol: str = ""
    side: Optional[TradeSide] = None
    order_type: Optional[OrderType] = None
    status: Optional[str] = None
    quantity: Decimal = Decimal("0")
    filled_quantity: Decimal = Decimal("0")
    price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    average_price: Optional[Decimal] = None
    created_at: Optional[datetime] = None

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def order_status(self) -> OrderStatus:
        return map_broker_status_to_order_status(self.status)


@dataclass
class CancelOrderRequest:
    """Request to cancel an order."""

    broker_order_id: str


@dataclass
class CancelOrderResponse:
    """Response from order cancellation."""

    success: bool
    broker_order_id: Optional[str] = None
    status: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class AccountCash:
    """Account cash figures."""

    free: Decimal
    """Cash available to trade."""

    total: Decimal
    """Cash plus invested value."""

    invested: Decimal = Decimal("0")
    """Market value of holdings."""


@dataclass
class BrokerPosition:
    """Holding as reported by the broker."""

    symbol: str
    quantity: Decimal
    average_price: Decimal
    current_price: Optional[Decimal] = None


# ============================================================
# ABSTRACT BROKER ADAPTER
# ============================================================

class BrokerAdapter(ABC):
    """
    Abstract interface for broker adapters.

    Implementations:
    - MockBrokerAdapter: tests and paper runs
    - HttpBrokerAdapter: REST broker API via aiohttp

    Methods raise core.exceptions.BrokerError when the broker
    cannot be reached or answers with an error status.
    """

    @property
    @abstractmethod
    def broker_id(self) -> str:
        """Broker identifier."""

    @abstractmethod
    async def connect(self) -> None:
        """Open connections."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connections."""

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    @abstractmethod
    async def submit_order(self, request: SubmitOrderRequest) -> SubmitOrderResponse:
        """Place an order."""

    @abstractmethod
    async def query_order(self, request: QueryOrderRequest) -> QueryOrderResponse:
        """Current state of an order."""

    @abstractmethod
    async def cancel_order(self, request: CancelOrderRequest) -> CancelOrderResponse:
        """Cancel an order."""

    @abstractmethod
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[QueryOrderResponse]:
        """Open orders, optionally for one symbol."""

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    @abstractmethod
    async def get_account_cash(self) -> AccountCash:
        """Account cash and total value."""

    @abstractmethod
    async def get_positions(self) -> List[BrokerPosition]:
        """All holdings."""

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    @abstractmethod
    async def get_current_price(self, symbol: str) -> Optional[Decimal]:
        """Last price for ``symbol``, None when unknown."""
