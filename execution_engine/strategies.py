"""
Execution Engine - Execution Strategies.

============================================================
PURPOSE
============================================================
How an order actually gets filled. The Order Manager owns all
bookkeeping (Order, Trade and Position records); a strategy only
turns "buy/sell N of X" into a FillReport.

STRATEGIES:
- SimulatedExecution: fills at the intended price with a
  synthetic broker id (dry run)
- BrokerExecution: submits through a BrokerAdapter, polls until
  a terminal state within the order timeout, cancels and
  re-checks on timeout

Both strategies drive the exact same bookkeeping path.

============================================================
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

from core.exceptions import BrokerError, OrderError
from storage.models.enums import OrderStatus, OrderType, TradeSide
from execution_engine.adapters.base import (
    BrokerAdapter,
    CancelOrderRequest,
    QueryOrderRequest,
    QueryOrderResponse,
    SubmitOrderRequest,
    is_rejection,
)
from execution_engine.config import ExecutionConfig
from execution_engine.types import ExecutionResultCode, FillReport


logger = logging.getLogger(__name__)


class ExecutionStrategy(ABC):
    """Fills orders for the Order Manager."""

    name: str = "abstract"

    @property
    def is_live(self) -> bool:
        return False

    @abstractmethod
    async def execute_market_order(
        self,
        ticker: str,
        side: TradeSide,
        quantity: float,
        intended_price: float,
    ) -> FillReport:
        """Fill a market order. Never raises for broker failures."""

    @abstractmethod
    async def place_resting_order(
        self,
        ticker: str,
        side: TradeSide,
        order_type: OrderType,
        quantity: float,
        price: float,
    ) -> str:
        """
        Place a resting GTC order (STOP or LIMIT at ``price``) and
        return its broker order id.

        Raises:
            BrokerError: broker unreachable
            OrderError: broker refused the order
        """

    @abstractmethod
    async def cancel_order(self, broker_order_id: str) -> bool:
        """Cancel a resting order. Returns False when the broker refused."""

    @abstractmethod
    async def get_fill(self, broker_order_id: str) -> Optional[FillReport]:
        """Fill of a resting order, None while it is unfilled."""


# ============================================================
# SIMULATED
# ============================================================

class SimulatedExecution(ExecutionStrategy):
    """Dry-run fills at the intended price."""

    name = "simulated"

    async def execute_market_order(
        self,
        ticker: str,
        side: TradeSide,
        quantity: float,
        intended_price: float,
    ) -> FillReport:
        broker_order_id = f"dry_run_{side.value}_{ticker}_{uuid.uuid4().hex[:8]}"
        logger.info(f"Simulated {side.value} {quantity} {ticker} @ {intended_price:.4f}")
        return FillReport(
            code=ExecutionResultCode.SUCCESS,
            broker_order_id=broker_order_id,
            fill_price=intended_price,
            filled_quantity=quantity,
            message="Simulated fill",
        )

    async def place_resting_order(
        self,
        ticker: str,
        side: TradeSide,
        order_type: OrderType,
        quantity: float,
        price: float,
    ) -> str:
        return f"dry_run_{order_type.value}_{ticker}_{uuid.uuid4().hex[:8]}"

    async def cancel_order(self, broker_order_id: str) -> bool:
        return True

    async def get_fill(self, broker_order_id: str) -> Optional[FillReport]:
        # Simulated resting orders never fill on their own.
        return None


# ============================================================
# BROKER
# ============================================================

class BrokerExecution(ExecutionStrategy):
    """
    Live fills through a BrokerAdapter.

    Every broker call is bounded by ``order_timeout_seconds``. A
    timed-out order is cancelled and queried once more, since the
    fill may have landed between the last poll and the cancel.
    """

    name = "broker"

    def __init__(self, adapter: BrokerAdapter, config: Optional[ExecutionConfig] = None):
        self._adapter = adapter
        self._config = config or ExecutionConfig(dry_run=False)

    @property
    def is_live(self) -> bool:
        return True

    @property
    def adapter(self) -> BrokerAdapter:
        return self._adapter

    async def execute_market_order(
        self,
        ticker: str,
        side: TradeSide,
        quantity: float,
        intended_price: float,
    ) -> FillReport:
        timeout = self._config.order_timeout_seconds
        request = SubmitOrderRequest(
            symbol=ticker,
            side=side,
            order_type=OrderType.MARKET,
            quantity=Decimal(str(quantity)),
        )

        try:
            response = await asyncio.wait_for(self._adapter.submit_order(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Submit timeout for {side.value} {ticker}")
            return FillReport(code=ExecutionResultCode.TIMEOUT, message=f"Order submission timed out after {timeout}s")
        except BrokerError as e:
            logger.error(f"Broker error submitting {side.value} {ticker}: {e}")
            return FillReport(code=ExecutionResultCode.BROKER_ERROR, message=str(e))

        if not response.success or is_rejection(response.status):
            logger.warning(f"Order rejected for {ticker}: {response.error_message}")
            return FillReport(
                code=ExecutionResultCode.REJECTED,
                broker_order_id=response.broker_order_id,
                message=response.error_message or "Rejected by broker",
            )

        broker_order_id = response.broker_order_id
        logger.info(f"Market {side.value} order placed for {ticker}: {broker_order_id}")

        try:
            final = await asyncio.wait_for(self._poll_until_terminal(broker_order_id), timeout=timeout)
        except asyncio.TimeoutError:
            return await self._cancel_and_recheck(broker_order_id, quantity)
        except BrokerError as e:
            logger.error(f"Broker error polling {broker_order_id}: {e}")
            return FillReport(
                code=ExecutionResultCode.BROKER_ERROR,
                broker_order_id=broker_order_id,
                message=str(e),
            )

        return self._report_from_query(final, quantity)

    async def place_resting_order(
        self,
        ticker: str,
        side: TradeSide,
        order_type: OrderType,
        quantity: float,
        price: float,
    ) -> str:
        request = SubmitOrderRequest(
            symbol=ticker,
            side=side,
            order_type=order_type,
            quantity=Decimal(str(quantity)),
            price=Decimal(str(round(price, 4))) if order_type == OrderType.LIMIT else None,
            stop_price=Decimal(str(round(price, 4))) if order_type == OrderType.STOP else None,
            time_validity="GTC",
        )

        try:
            response = await asyncio.wait_for(
                self._adapter.submit_order(request),
                timeout=self._config.order_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise BrokerError(
                f"Timed out placing {order_type.value} order for {ticker}",
                broker=self._adapter.broker_id,
                error_code="BRK_TIMEOUT",
                cause=e,
            )

        if not response.success or not response.broker_order_id:
            raise OrderError(
                f"{order_type.value} order for {ticker} refused: {response.error_message}",
                context={"error_code": response.error_code},
            )
        return response.broker_order_id

    async def cancel_order(self, broker_order_id: str) -> bool:
        try:
            response = await asyncio.wait_for(
                self._adapter.cancel_order(CancelOrderRequest(broker_order_id=broker_order_id)),
                timeout=self._config.order_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Cancel timeout for order {broker_order_id}")
            return False
        except BrokerError as e:
            logger.warning(f"Cancel failed for order {broker_order_id}: {e}")
            return False
        return response.success

    async def get_fill(self, broker_order_id: str) -> Optional[FillReport]:
        try:
            result = await asyncio.wait_for(
                self._adapter.query_order(QueryOrderRequest(broker_order_id=broker_order_id)),
                timeout=self._config.order_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise BrokerError(
                f"Timed out querying order {broker_order_id}",
                broker=self._adapter.broker_id,
                error_code="BRK_TIMEOUT",
                cause=e,
            )
        if not result.found or result.order_status != OrderStatus.FILLED:
            return None
        return self._report_from_query(result, float(result.quantity))

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _poll_until_terminal(self, broker_order_id: str) -> QueryOrderResponse:
        while True:
            result = await self._adapter.query_order(QueryOrderRequest(broker_order_id=broker_order_id))
            if result.found and result.order_status.is_terminal():
                return result
            await asyncio.sleep(self._config.poll_interval_seconds)

    async def _cancel_and_recheck(self, broker_order_id: str, quantity: float) -> FillReport:
        logger.warning(f"Order {broker_order_id} not terminal after timeout, cancelling")
        await self.cancel_order(broker_order_id)

        try:
            final = await asyncio.wait_for(
                self._adapter.query_order(QueryOrderRequest(broker_order_id=broker_order_id)),
                timeout=self._config.order_timeout_seconds,
            )
        except (asyncio.TimeoutError, BrokerError) as e:
            logger.error(f"Re-check failed for order {broker_order_id}: {e}")
            return FillReport(
                code=ExecutionResultCode.TIMEOUT,
                broker_order_id=broker_order_id,
                message="Order fill timeout",
            )

        if final.found and final.order_status == OrderStatus.FILLED:
            logger.info(f"Order {broker_order_id} filled during cancel")
            return self._report_from_query(final, quantity)

        filled = float(final.filled_quantity) if final.found else 0.0
        if filled > 0:
            return FillReport(
                code=ExecutionResultCode.PARTIAL_FILL,
                broker_order_id=broker_order_id,
                fill_price=float(final.average_price) if final.average_price is not None else None,
                filled_quantity=filled,
                message=f"Partially filled {filled}/{quantity} before timeout",
            )

        return FillReport(
            code=ExecutionResultCode.TIMEOUT,
            broker_order_id=broker_order_id,
            message="Order fill timeout",
        )

    @staticmethod
    def _report_from_query(result: QueryOrderResponse, quantity: float) -> FillReport:
        filled = float(result.filled_quantity)
        price = float(result.average_price) if result.average_price is not None else None

        if result.order_status == OrderStatus.FILLED and filled >= quantity and price is not None:
            return FillReport(
                code=ExecutionResultCode.SUCCESS,
                broker_order_id=result.broker_order_id,
                fill_price=price,
                filled_quantity=filled,
            )

        if filled > 0:
            return FillReport(
                code=ExecutionResultCode.PARTIAL_FILL,
                broker_order_id=result.broker_order_id,
                fill_price=price,
                filled_quantity=filled,
                message=f"Partially filled {filled}/{quantity}",
            )

        return FillReport(
            code=ExecutionResultCode.REJECTED,
            broker_order_id=result.broker_order_id,
            message=f"Order ended {result.status}",
        )
