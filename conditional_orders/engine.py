"""
Conditional Orders - Engine.

============================================================
PURPOSE
============================================================
Price, time and indicator triggered instructions, including
one-cancels-other (OCO) pairs.

RULES:
- Creation requires the feature flag and respects max_active
- An order already past expiry at creation is refused
- OCO legs share a group id, reference each other and must
  share a symbol
- Triggering flips pending -> triggered by compare-and-swap and
  cancels the OCO sibling in the same cycle, so a sibling that
  would also have fired does not
- Price triggers are inclusive

API misuse raises ConditionalOrderError.

============================================================
"""

import logging
import uuid
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from core.clock import ClockProtocol, SystemClock, from_iso8601
from core.exceptions import OrderError
from storage.models.enums import ConditionalOrderStatus, TriggerType
from storage.models.trading import ConditionalOrder
from storage.repositories import ConditionalOrderRepository
from conditional_orders.types import (
    INDICATOR_OPERATORS,
    ConditionalOrderConfig,
    ConditionalOrderRequest,
    ConditionalOrderStatusReport,
    OrderAction,
    TriggeredAction,
)


logger = logging.getLogger(__name__)


class ConditionalOrderError(OrderError):
    """Conditional order API misuse."""


class ConditionalOrderEngine:
    """Creates, triggers, expires and cancels conditional orders."""

    def __init__(
        self,
        session: Session,
        clock: Optional[ClockProtocol] = None,
        config: Optional[ConditionalOrderConfig] = None,
    ):
        self._repo = ConditionalOrderRepository(session)
        self._clock = clock or SystemClock()
        self._config = config or ConditionalOrderConfig()
        self._config.validate()

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    # --------------------------------------------------------
    # CREATION
    # --------------------------------------------------------

    def _require_enabled(self) -> None:
        if not self._config.enabled:
            raise ConditionalOrderError("Conditional orders feature is disabled")

    def _require_capacity(self, needed: int) -> None:
        active = self._repo.count_active()
        if active + needed > self._config.max_active:
            raise ConditionalOrderError(
                f"Max active conditional orders ({self._config.max_active}) reached",
                context={"active": active},
            )

    def _validate_request(self, request: ConditionalOrderRequest) -> None:
        if request.expires_at is not None and request.expires_at <= self._clock.now():
            raise ConditionalOrderError(f"Expiry {request.expires_at.isoformat()} is in the past")

        trigger = TriggerType(request.trigger_type)
        condition = request.trigger_condition
        if trigger in (TriggerType.PRICE_ABOVE, TriggerType.PRICE_BELOW):
            price = condition.get("price")
            if not isinstance(price, (int, float)) or price <= 0:
                raise ConditionalOrderError(f"{trigger.value} needs a positive 'price'")
        elif trigger == TriggerType.TIME:
            if "trigger_at" not in condition:
                raise ConditionalOrderError("time trigger needs 'trigger_at'")
        elif trigger == TriggerType.INDICATOR:
            if not condition.get("indicator") or condition.get("operator") not in INDICATOR_OPERATORS:
                raise ConditionalOrderError(
                    f"indicator trigger needs 'indicator' and operator in {INDICATOR_OPERATORS}"
                )
            if not isinstance(condition.get("value"), (int, float)):
                raise ConditionalOrderError("indicator trigger needs a numeric 'value'")

        if request.action.type not in ("buy", "sell"):
            raise ConditionalOrderError(f"Unknown action type '{request.action.type}'")

    def _normalized_condition(self, request: ConditionalOrderRequest) -> Dict:
        condition = dict(request.trigger_condition)
        trigger_at = condition.get("trigger_at")
        if trigger_at is not None and not isinstance(trigger_at, str):
            condition["trigger_at"] = trigger_at.isoformat()
        return condition

    def _insert(self, request: ConditionalOrderRequest, group_id: Optional[str] = None) -> ConditionalOrder:
        return self._repo.create_conditional(
            symbol=request.symbol,
            trigger_type=request.trigger_type,
            trigger_condition=self._normalized_condition(request),
            action=request.action.to_dict(),
            now=self._clock.now(),
            expires_at=request.expires_at,
            oco_group_id=group_id,
        )

    def create_order(self, request: ConditionalOrderRequest) -> ConditionalOrder:
        self._require_enabled()
        self._require_capacity(1)
        self._validate_request(request)

        order = self._insert(request)
        self._repo.commit()
        logger.info(f"Conditional order {order.id} created: {order.symbol} {order.trigger_type}")
        return order

    def create_oco_pair(
        self,
        first: ConditionalOrderRequest,
        second: ConditionalOrderRequest,
    ) -> List[ConditionalOrder]:
        self._require_enabled()
        if first.symbol != second.symbol:
            raise ConditionalOrderError(
                f"OCO legs must share a symbol ({first.symbol} != {second.symbol})"
            )
        self._require_capacity(2)
        self._validate_request(first)
        self._validate_request(second)

        group_id = str(uuid.uuid4())
        leg_one = self._insert(first, group_id)
        leg_two = self._insert(second, group_id)
        self._repo.link_siblings(leg_one, leg_two)
        self._repo.commit()

        logger.info(f"OCO pair {group_id} created for {first.symbol}: {leg_one.id} / {leg_two.id}")
        return [leg_one, leg_two]

    # --------------------------------------------------------
    # TRIGGERS
    # --------------------------------------------------------

    def check_triggers(
        self,
        prices: Dict[str, float],
        indicators: Optional[Dict[str, Dict[str, float]]] = None,
    ) -> List[TriggeredAction]:
        """
        Fire every pending order whose condition holds.

        ``indicators`` maps symbol -> indicator name -> value.
        """
        if not self._config.enabled:
            return []

        now = self._clock.now()
        triggered: List[TriggeredAction] = []
        for order in self._repo.get_pending():
            if order.expires_at is not None and order.expires_at <= now:
                continue
            try:
                fires = self._condition_met(order, prices, indicators or {})
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Conditional order {order.id} has an unreadable condition: {e}")
                continue
            if not fires:
                continue

            updated = self._repo.transition_status(
                order.id,
                ConditionalOrderStatus.PENDING,
                ConditionalOrderStatus.TRIGGERED,
                triggered_at=now,
            )
            if updated is None:
                # sibling fired first this cycle, or cancelled elsewhere
                continue

            if order.oco_group_id:
                cancelled = self._cancel_group(order.oco_group_id)
                logger.info(f"OCO {order.oco_group_id}: order {order.id} fired, {cancelled} sibling(s) cancelled")

            triggered.append(TriggeredAction(
                order_id=order.id,
                symbol=order.symbol,
                trigger_type=TriggerType(order.trigger_type),
                action=OrderAction.from_dict(order.action),
            ))
            logger.info(f"Conditional order {order.id} triggered: {order.symbol} {order.trigger_type}")

        self._repo.commit()
        return triggered

    def _condition_met(
        self,
        order: ConditionalOrder,
        prices: Dict[str, float],
        indicators: Dict[str, Dict[str, float]],
    ) -> bool:
        condition = order.trigger_condition
        trigger = TriggerType(order.trigger_type)

        if trigger in (TriggerType.PRICE_ABOVE, TriggerType.PRICE_BELOW):
            price = prices.get(order.symbol)
            if price is None:
                return False
            if trigger == TriggerType.PRICE_ABOVE:
                return price >= float(condition["price"])
            return price <= float(condition["price"])

        if trigger == TriggerType.TIME:
            return self._clock.now() >= from_iso8601(condition["trigger_at"])

        value = indicators.get(order.symbol, {}).get(condition["indicator"])
        if value is None:
            return False
        if condition["operator"] == "above":
            return value > float(condition["value"])
        return value < float(condition["value"])

    def mark_executed(self, order_id: int) -> bool:
        updated = self._repo.transition_status(
            order_id, ConditionalOrderStatus.TRIGGERED, ConditionalOrderStatus.EXECUTED
        )
        self._repo.commit()
        return updated is not None

    # --------------------------------------------------------
    # EXPIRY / CANCELLATION
    # --------------------------------------------------------

    def expire_old_orders(self) -> int:
        expired = 0
        for order in self._repo.get_pending_past_expiry(self._clock.now()):
            updated = self._repo.transition_status(
                order.id, ConditionalOrderStatus.PENDING, ConditionalOrderStatus.EXPIRED
            )
            if updated is not None:
                expired += 1
                logger.info(f"Conditional order {order.id} ({order.symbol}) expired")
        self._repo.commit()
        return expired

    def cancel_order(self, order_id: int) -> ConditionalOrder:
        self._require_enabled()
        order = self._repo.get(order_id)
        if order is None:
            raise ConditionalOrderError(f"Conditional order {order_id} not found")
        if order.status != ConditionalOrderStatus.PENDING.value:
            raise ConditionalOrderError(f"Conditional order {order_id} is not pending ({order.status})")

        updated = self._repo.transition_status(
            order_id, ConditionalOrderStatus.PENDING, ConditionalOrderStatus.CANCELLED
        )
        self._repo.commit()
        if updated is None:
            raise ConditionalOrderError(f"Conditional order {order_id} changed status during cancel")
        logger.info(f"Conditional order {order_id} ({order.symbol}) cancelled")
        return updated

    def _cancel_group(self, group_id: str) -> int:
        cancelled = 0
        for order in self._repo.get_by_group(group_id):
            updated = self._repo.transition_status(
                order.id, ConditionalOrderStatus.PENDING, ConditionalOrderStatus.CANCELLED
            )
            if updated is not None:
                cancelled += 1
        return cancelled

    def cancel_oco_group(self, group_id: str) -> int:
        """Cancel the pending legs of a group. A second call cancels nothing."""
        cancelled = self._cancel_group(group_id)
        self._repo.commit()
        if cancelled:
            logger.info(f"OCO group {group_id}: {cancelled} order(s) cancelled")
        return cancelled

    def cancel_all_for_symbol(self, symbol: str) -> int:
        if not self._config.enabled:
            return 0
        cancelled = 0
        for order in self._repo.get_pending(symbol):
            updated = self._repo.transition_status(
                order.id, ConditionalOrderStatus.PENDING, ConditionalOrderStatus.CANCELLED
            )
            if updated is not None:
                cancelled += 1
        self._repo.commit()
        if cancelled:
            logger.info(f"Cancelled {cancelled} conditional order(s) for {symbol}")
        return cancelled

    def pending_symbols(self) -> List[str]:
        """Symbols that need a price for the next trigger check."""
        if not self._config.enabled:
            return []
        return sorted({order.symbol for order in self._repo.get_pending()})

    def get_status(self) -> ConditionalOrderStatusReport:
        by_type = {trigger.value: 0 for trigger in TriggerType}
        pending = self._repo.get_pending()
        for order in pending:
            by_type[order.trigger_type] = by_type.get(order.trigger_type, 0) + 1

        start_of_day = self._clock.start_of_day()
        return ConditionalOrderStatusReport(
            active_count=len(pending),
            triggered_today=self._repo.count_triggered_since(start_of_day),
            by_type=by_type,
        )
