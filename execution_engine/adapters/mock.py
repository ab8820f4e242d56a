"""
Execution Engine - Mock Broker Adapter.

============================================================
PURPOSE
============================================================
In-memory broker for tests and paper runs.

FEATURES:
- Configurable latency
- Configurable error injection (rejection, partial fill,
  timeout, outage)
- Market orders fill immediately unless held
- Stop and limit orders rest until filled or cancelled
- Cash and holdings tracking

Deterministic by default: randomness is only used when a
probability is configured, seeded via MockConfig.seed.

============================================================
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from core.exceptions import BrokerError
from storage.models.enums import OrderType, TradeSide
from execution_engine.adapters.base import (
    AccountCash,
    BrokerAdapter,
    BrokerPosition,
    CancelOrderRequest,
    CancelOrderResponse,
    QueryOrderRequest,
    QueryOrderResponse,
    SubmitOrderRequest,
    SubmitOrderResponse,
)


logger = logging.getLogger(__name__)


TERMINAL_STATUSES = {"FILLED", "CANCELLED", "EXPIRED", "REJECTED"}


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockConfig:
    """Configuration for the mock broker."""

    latency_ms: float = 0.0
    """Simulated latency per call."""

    initial_cash: Decimal = Decimal("100000")
    """Initial free cash."""

    initial_positions: Dict[str, Decimal] = field(default_factory=dict)
    """Initial holdings by symbol, booked at default_price."""

    immediate_fill: bool = True
    """Whether market orders fill on submission."""

    partial_fill_probability: float = 0.0
    """Probability of a partial fill (0.0 to 1.0)."""

    partial_fill_ratio: float = 0.5
    """Filled share of the quantity on a partial fill."""

    rejection_probability: float = 0.0
    """Probability of order rejection."""

    timeout_probability: float = 0.0
    """Probability that submission raises a timeout BrokerError."""

    default_price: Decimal = Decimal("100")
    """Price for symbols without an explicit price."""

    slippage_bps: int = 0
    """Adverse slippage applied to market fills, in basis points."""

    seed: Optional[int] = None
    """Seed for the injected randomness."""


# ============================================================
# MOCK ORDER
# ============================================================

@dataclass
class MockOrder:
    """Mock order state."""

    order_id: str
    symbol: str
    side: TradeSide
    order_type: OrderType
    quantity: Decimal
    price: Optional[Decimal]
    stop_price: Optional[Decimal]
    client_order_id: Optional[str] = None
    status: str = "NEW"
    filled_quantity: Decimal = Decimal("0")
    average_price: Optional[Decimal] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_response(self) -> QueryOrderResponse:
        return QueryOrderResponse(
            found=True,
            broker_order_id=self.order_id,
            symbol=self.symbol,
            side=self.side,
            order_type=self.order_type,
            status=self.status,
            quantity=self.quantity,
            filled_quantity=self.filled_quantity,
            price=self.price,
            stop_price=self.stop_price,
            average_price=self.average_price,
            created_at=self.created_at,
        )


# ============================================================
# MOCK BROKER ADAPTER
# ============================================================

class MockBrokerAdapter(BrokerAdapter):
    """
    Mock broker for testing.

    Simulates:
    - Order submission, fills and cancellation
    - Cash and holdings
    - Error injection
    """

    def __init__(self, config: Optional[MockConfig] = None):
        self._config = config or MockConfig()
        self._random = random.Random(self._config.seed)
        self._connected = False

        self._cash = Decimal("0")
        self._positions: Dict[str, BrokerPosition] = {}
        self._orders: Dict[str, MockOrder] = {}
        self._prices: Dict[str, Decimal] = {}
        self._sequence = 0

        self._force_next_error: Optional[str] = None
        self._force_next_partial = False
        self._fail_cancels = False
        self._unavailable = False

        self._init_state()

    def _init_state(self) -> None:
        self._cash = self._config.initial_cash
        for symbol, qty in self._config.initial_positions.items():
            self._positions[symbol] = BrokerPosition(
                symbol=symbol,
                quantity=qty,
                average_price=self._config.default_price,
            )

    @property
    def broker_id(self) -> str:
        return "mock"

    @property
    def is_connected(self) -> bool:
        return self._connected

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        await self._simulate_latency()
        self._connected = True
        logger.info("MockBrokerAdapter connected")

    async def disconnect(self) -> None:
        self._connected = False
        logger.info("MockBrokerAdapter disconnected")

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def submit_order(self, request: SubmitOrderRequest) -> SubmitOrderResponse:
        await self._simulate_latency()
        self._check_available("submit_order")

        if self._force_next_error:
            error = self._force_next_error
            self._force_next_error = None
            return SubmitOrderResponse(
                success=False,
                status="REJECTED",
                error_code=error,
                error_message=f"Injected error: {error}",
            )

        if self._roll(self._config.rejection_probability):
            return SubmitOrderResponse(
                success=False,
                status="REJECTED",
                error_code="BRK_INSUFFICIENT_FUNDS",
                error_message="Simulated rejection",
            )

        if self._roll(self._config.timeout_probability):
            raise BrokerError("Simulated timeout", broker=self.broker_id, error_code="BRK_TIMEOUT")

        self._sequence += 1
        order = MockOrder(
            order_id=f"mock-{self._sequence}",
            symbol=request.symbol,
            side=request.side,
            order_type=request.order_type,
            quantity=request.quantity,
            price=request.price,
            stop_price=request.stop_price,
            client_order_id=request.client_order_id,
        )
        self._orders[order.order_id] = order

        if self._config.immediate_fill and request.order_type == OrderType.MARKET:
            partial = self._force_next_partial or self._roll(self._config.partial_fill_probability)
            self._force_next_partial = False
            quantity = request.quantity
            if partial:
                quantity = (request.quantity * Decimal(str(self._config.partial_fill_ratio))).quantize(Decimal("1"))
            self._fill(order, quantity, self._market_fill_price(request.symbol, request.side))

        return SubmitOrderResponse(
            success=True,
            broker_order_id=order.order_id,
            status=order.status,
            filled_quantity=order.filled_quantity,
            average_price=order.average_price,
        )

    async def query_order(self, request: QueryOrderRequest) -> QueryOrderResponse:
        await self._simulate_latency()
        self._check_available("query_order")

        order = self._orders.get(request.broker_order_id)
        if order is None:
            return QueryOrderResponse(found=False, error_code="BRK_ORDER_NOT_FOUND")
        return order.to_response()

    async def cancel_order(self, request: CancelOrderRequest) -> CancelOrderResponse:
        await self._simulate_latency()
        self._check_available("cancel_order")

        if self._fail_cancels:
            raise BrokerError("Simulated cancel failure", broker=self.broker_id, error_code="BRK_CANCEL_FAILED")

        order = self._orders.get(request.broker_order_id)
        if order is None:
            return CancelOrderResponse(
                success=False,
                error_code="BRK_ORDER_NOT_FOUND",
                error_message="Order not found",
            )

        if order.status in TERMINAL_STATUSES:
            return CancelOrderResponse(
                success=False,
                broker_order_id=order.order_id,
                status=order.status,
                error_code="BRK_ORDER_NOT_FOUND",
                error_message=f"Order already in terminal state: {order.status}",
            )

        order.status = "CANCELLED"
        return CancelOrderResponse(success=True, broker_order_id=order.order_id, status="CANCELLED")

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[QueryOrderResponse]:
        await self._simulate_latency()
        self._check_available("get_open_orders")

        return [
            order.to_response()
            for order in self._orders.values()
            if order.status in {"NEW", "PARTIALLY_FILLED"} and (symbol is None or order.symbol == symbol)
        ]

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def get_account_cash(self) -> AccountCash:
        await self._simulate_latency()
        self._check_available("get_account_cash")

        invested = sum(
            (p.quantity * self._get_price(p.symbol) for p in self._positions.values()),
            Decimal("0"),
        )
        return AccountCash(free=self._cash, total=self._cash + invested, invested=invested)

    async def get_positions(self) -> List[BrokerPosition]:
        await self._simulate_latency()
        self._check_available("get_positions")

        return [
            BrokerPosition(
                symbol=p.symbol,
                quantity=p.quantity,
                average_price=p.average_price,
                current_price=self._get_price(p.symbol),
            )
            for p in self._positions.values()
        ]

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_current_price(self, symbol: str) -> Optional[Decimal]:
        await self._simulate_latency()
        self._check_available("get_current_price")
        return self._get_price(symbol)

    def _get_price(self, symbol: str) -> Decimal:
        return self._prices.get(symbol, self._config.default_price)

    # --------------------------------------------------------
    # TEST HELPERS
    # --------------------------------------------------------

    def set_price(self, symbol: str, price: Decimal) -> None:
        self._prices[symbol] = Decimal(str(price))

    def set_cash(self, cash: Decimal) -> None:
        self._cash = Decimal(str(cash))

    def set_position(self, symbol: str, quantity: Decimal, average_price: Decimal) -> None:
        self._positions[symbol] = BrokerPosition(
            symbol=symbol,
            quantity=Decimal(str(quantity)),
            average_price=Decimal(str(average_price)),
        )

    def remove_position(self, symbol: str) -> None:
        self._positions.pop(symbol, None)

    def inject_error(self, error_code: str) -> None:
        """Reject the next submission with ``error_code``."""
        self._force_next_error = error_code

    def inject_partial_fill(self) -> None:
        """Partially fill the next market order."""
        self._force_next_partial = True

    def set_fail_cancels(self, fail: bool) -> None:
        self._fail_cancels = fail

    def set_unavailable(self, unavailable: bool) -> None:
        """Make every call raise BrokerError (simulated outage)."""
        self._unavailable = unavailable

    def hold_fills(self, hold: bool = True) -> None:
        """Leave market orders open instead of filling them."""
        self._config.immediate_fill = not hold

    def fill_order(self, order_id: str, price: Optional[Decimal] = None) -> None:
        """Fill a resting order (e.g. a triggered stop)."""
        order = self._orders[order_id]
        fill_price = Decimal(str(price)) if price is not None else (
            order.price or order.stop_price or self._get_price(order.symbol)
        )
        self._fill(order, order.quantity - order.filled_quantity, fill_price)

    def get_order(self, order_id: str) -> Optional[MockOrder]:
        return self._orders.get(order_id)

    @property
    def orders(self) -> List[MockOrder]:
        return list(self._orders.values())

    def reset(self) -> None:
        self._orders.clear()
        self._positions.clear()
        self._prices.clear()
        self._sequence = 0
        self._init_state()

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _simulate_latency(self) -> None:
        if self._config.latency_ms > 0:
            await asyncio.sleep(self._config.latency_ms / 1000)

    def _check_available(self, operation: str) -> None:
        if self._unavailable:
            raise BrokerError(
                f"Mock broker unavailable during {operation}",
                broker=self.broker_id,
                error_code="BRK_UNAVAILABLE",
                endpoint=operation,
            )

    def _roll(self, probability: float) -> bool:
        return probability > 0 and self._random.random() < probability

    def _market_fill_price(self, symbol: str, side: TradeSide) -> Decimal:
        base = self._get_price(symbol)
        slippage = base * Decimal(self._config.slippage_bps) / Decimal("10000")
        return base + slippage if side == TradeSide.BUY else base - slippage

    def _fill(self, order: MockOrder, quantity: Decimal, price: Decimal) -> None:
        order.filled_quantity += quantity
        order.average_price = price
        order.status = "FILLED" if order.filled_quantity >= order.quantity else "PARTIALLY_FILLED"
        self._update_holdings(order.symbol, order.side, quantity, price)

    def _update_holdings(self, symbol: str, side: TradeSide, quantity: Decimal, price: Decimal) -> None:
        current = self._positions.get(symbol)
        if side == TradeSide.BUY:
            self._cash -= quantity * price
            if current is None:
                self._positions[symbol] = BrokerPosition(symbol=symbol, quantity=quantity, average_price=price)
            else:
                total = current.quantity + quantity
                current.average_price = (current.quantity * current.average_price + quantity * price) / total
                current.quantity = total
            return

        self._cash += quantity * price
        if current is not None:
            current.quantity -= quantity
            if current.quantity <= 0:
                del self._positions[symbol]
