"""
Execution Engine - Order Replacer.

============================================================
PURPOSE
============================================================
Replace stale open limit orders whose price has drifted away
from the market.

RULES:
- Only orders older than replace_after_seconds are considered
- Replace only when |market - limit| / limit > price_deviation_pct
- At most max_replacements per chain
- Protective (stoploss / take_profit) and market orders are
  never replaced
- Old order is cancelled first; if it filled meanwhile the fill
  is recorded and nothing is replaced
- Old order links to its successor via replaced_by_order_id

============================================================
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from core.clock import ClockProtocol, SystemClock
from core.exceptions import BrokerError, OrderError
from monitoring.audit import AuditLogger
from position_management.tracker import QuoteProvider
from storage.models.enums import OrderStatus, OrderTag, OrderType, TradeSide
from storage.models.trading import Order
from storage.repositories import OrderRepository, PositionRepository
from execution_engine.config import OrderReplacerConfig
from execution_engine.state_machine import OrderStateMachine
from execution_engine.strategies import ExecutionStrategy


logger = logging.getLogger(__name__)


PROTECTED_ORDER_TAGS = {OrderTag.STOPLOSS.value, OrderTag.TAKE_PROFIT.value}


@dataclass
class ReplaceResult:
    """Outcome of one replacement sweep."""

    checked: int = 0
    replaced: int = 0
    skipped: int = 0
    filled_during_cancel: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class ReplaceOrderResult:
    """Outcome of replacing a single order."""

    success: bool
    new_order_id: Optional[int] = None
    filled_during_cancel: bool = False
    error: Optional[str] = None


class OrderReplacer:
    """Cancels and re-places stale limit orders at the current market price."""

    def __init__(
        self,
        session: Session,
        strategy: ExecutionStrategy,
        quotes: QuoteProvider,
        clock: Optional[ClockProtocol] = None,
        config: Optional[OrderReplacerConfig] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self._strategy = strategy
        self._quotes = quotes
        self._clock = clock or SystemClock()
        self._config = config or OrderReplacerConfig()
        self._config.validate()
        self._orders = OrderRepository(session)
        self._positions = PositionRepository(session)
        self._state_machine = OrderStateMachine(self._orders, self._clock)
        self._audit = audit or AuditLogger(session, self._clock)

    async def process_open_orders(self) -> ReplaceResult:
        """Check all open orders and replace the stale ones."""
        result = ReplaceResult()
        if not self._config.enabled:
            return result

        open_orders = [o for o in self._orders.get_active_orders() if o.status == OrderStatus.OPEN.value]
        if not open_orders:
            logger.debug("No open orders to check for replacement")
            return result

        now = self._clock.now()
        for order in open_orders:
            result.checked += 1

            if order.tag in PROTECTED_ORDER_TAGS or order.order_type == OrderType.MARKET.value:
                result.skipped += 1
                continue

            if (now - order.created_at).total_seconds() < self._config.replace_after_seconds:
                result.skipped += 1
                continue

            depth = self._orders.chain_length(order)
            if depth >= self._config.max_replacements:
                logger.info(f"Order {order.id} ({order.symbol}) reached {depth} replacements, skipping")
                result.skipped += 1
                continue

            try:
                current_price = await self._quotes.get_quote(order.symbol)
            except Exception as e:
                logger.warning(f"Quote failed for {order.symbol}: {e}")
                current_price = None

            if current_price is None or not self.should_replace(order, current_price):
                result.skipped += 1
                continue

            outcome = await self.replace_order(order.id, current_price)
            if outcome.success:
                result.replaced += 1
            elif outcome.filled_during_cancel:
                result.filled_during_cancel += 1
            else:
                result.errors.append(f"Failed to replace order {order.id} ({order.symbol}): {outcome.error}")

        logger.info(
            f"Order replacement: checked={result.checked} replaced={result.replaced} "
            f"skipped={result.skipped} filled_during_cancel={result.filled_during_cancel} "
            f"errors={len(result.errors)}"
        )
        return result

    def should_replace(self, order: Order, current_price: float) -> bool:
        if not order.requested_price or order.requested_price <= 0 or current_price <= 0:
            return False
        deviation = abs(current_price - order.requested_price) / order.requested_price
        return deviation > self._config.price_deviation_pct

    async def replace_order(self, order_id: int, new_price: float) -> ReplaceOrderResult:
        order = self._orders.get(order_id)
        if order is None:
            return ReplaceOrderResult(success=False, error=f"Order {order_id} not found")
        if order.tag in PROTECTED_ORDER_TAGS:
            return ReplaceOrderResult(success=False, error=f"Cannot replace {order.tag} order")
        if order.status != OrderStatus.OPEN.value:
            return ReplaceOrderResult(success=False, error=f"Order {order_id} is {order.status}")

        if order.broker_order_id:
            cancelled = await self._strategy.cancel_order(order.broker_order_id)
            if await self._record_fill_if_any(order):
                return ReplaceOrderResult(success=False, filled_during_cancel=True)
            if not cancelled:
                return ReplaceOrderResult(success=False, error=f"Failed to cancel order {order_id}")

        self._state_machine.mark_cancelled(order, "replaced")

        replacement = self._orders.create_order(
            symbol=order.symbol,
            side=order.side,
            tag=order.tag,
            requested_quantity=order.requested_quantity,
            now=self._clock.now(),
            order_type=order.order_type,
            requested_price=new_price,
            stop_price=order.stop_price,
            account_type=order.account_type,
        )
        self._orders.link_replacement(order, replacement)
        self._orders.commit()

        position = self._positions.get_by_symbol(order.symbol)
        ticker = position.ticker if position is not None else order.symbol

        try:
            broker_order_id = await self._strategy.place_resting_order(
                ticker,
                TradeSide(order.side),
                OrderType(order.order_type),
                order.requested_quantity,
                new_price,
            )
        except (BrokerError, OrderError) as e:
            self._state_machine.mark_failed(replacement, str(e))
            self._orders.commit()
            self._audit.log_error(
                f"Replacement for order {order.id} failed: {e}",
                symbol=order.symbol,
                details={"old_order_id": order.id, "new_price": new_price},
            )
            return ReplaceOrderResult(success=False, new_order_id=replacement.id, error=str(e))

        self._state_machine.mark_open(replacement, broker_order_id)
        self._orders.commit()

        self._audit.log_trade(
            order.symbol,
            f"Order {order.id} replaced by {replacement.id} @ {new_price:.4f}",
            {"old_price": order.requested_price, "new_price": new_price, "broker_order_id": broker_order_id},
        )
        return ReplaceOrderResult(success=True, new_order_id=replacement.id)

    async def _record_fill_if_any(self, order: Order) -> bool:
        try:
            fill = await self._strategy.get_fill(order.broker_order_id)
        except BrokerError as e:
            logger.warning(f"Could not verify order {order.id} after cancel: {e}")
            return False
        if fill is None:
            return False

        self._state_machine.transition(
            order,
            OrderStatus.FILLED,
            "Filled during cancel",
            filled_quantity=fill.filled_quantity,
            filled_price=fill.fill_price,
        )
        self._orders.commit()
        logger.info(f"Order {order.id} filled during cancel, no replacement needed")
        return True
