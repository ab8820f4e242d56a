"""
Order Repositories.

============================================================
PURPOSE
============================================================
- OrderRepository: broker instructions. Rows are written before
  the broker is contacted; status changes are validated by the
  order state machine in the execution engine and persisted here.
- ConditionalOrderRepository: price/time/indicator triggered
  orders, status moved by compare-and-swap.

============================================================
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from storage.models.enums import (
    AccountType,
    ConditionalOrderStatus,
    OrderStatus,
    OrderTag,
    OrderType,
    TradeSide,
    TriggerType,
)
from storage.models.trading import ConditionalOrder, Order
from storage.repositories.base import BaseRepository


ACTIVE_ORDER_STATUSES = [s.value for s in OrderStatus if s.is_active()]


class OrderRepository(BaseRepository[Order]):
    """Repository for broker orders."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, Order, "OrderRepository")

    def create_order(
        self,
        symbol: str,
        side: Any,
        tag: Any,
        requested_quantity: float,
        now: datetime,
        order_type: Any = OrderType.MARKET,
        requested_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        account_type: Any = AccountType.INVEST,
    ) -> Order:
        entity = Order(
            symbol=symbol,
            side=self._validate_enum("side", side, TradeSide),
            tag=self._validate_enum("tag", tag, OrderTag),
            order_type=self._validate_enum("order_type", order_type, OrderType),
            status=OrderStatus.PENDING.value,
            requested_quantity=requested_quantity,
            requested_price=requested_price,
            stop_price=stop_price,
            filled_quantity=0.0,
            account_type=self._validate_enum("account_type", account_type, AccountType),
            created_at=now,
            updated_at=now,
        )
        return self._add(entity)

    def set_status(self, order: Order, status: Any, now: datetime, **values: Any) -> Order:
        """Persist a status already checked by the order state machine."""
        order.status = self._validate_enum("status", status, OrderStatus)
        for key, value in values.items():
            setattr(order, key, value)
        order.updated_at = now
        self._flush()
        return order

    def get_by_broker_id(self, broker_order_id: str) -> Optional[Order]:
        return self._execute_scalar(
            select(Order).where(Order.broker_order_id == broker_order_id)
        )

    def get_active_orders(self, symbol: Optional[str] = None, tag: Any = None) -> List[Order]:
        stmt = select(Order).where(Order.status.in_(ACTIVE_ORDER_STATUSES))
        if symbol is not None:
            stmt = stmt.where(Order.symbol == symbol)
        if tag is not None:
            stmt = stmt.where(Order.tag == self._validate_enum("tag", tag, OrderTag))
        return self._execute_query(stmt.order_by(Order.created_at))

    def link_replacement(self, old: Order, new: Order) -> None:
        old.replaced_by_order_id = new.id
        self._flush()

    def get_predecessor(self, order_id: int) -> Optional[Order]:
        return self._execute_scalar(select(Order).where(Order.replaced_by_order_id == order_id))

    def chain_length(self, order: Order) -> int:
        """Number of replacements that led to ``order``."""
        length = 0
        current = self.get_predecessor(order.id)
        while current is not None:
            length += 1
            current = self.get_predecessor(current.id)
        return length

    def get_recent(self, limit: int = 50) -> List[Order]:
        return self._execute_query(
            select(Order).order_by(desc(Order.created_at), desc(Order.id)).limit(limit)
        )


class ConditionalOrderRepository(BaseRepository[ConditionalOrder]):
    """Repository for conditional orders."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, ConditionalOrder, "ConditionalOrderRepository")

    def create_conditional(
        self,
        symbol: str,
        trigger_type: Any,
        trigger_condition: dict,
        action: dict,
        now: datetime,
        expires_at: Optional[datetime] = None,
        oco_group_id: Optional[str] = None,
    ) -> ConditionalOrder:
        entity = ConditionalOrder(
            symbol=symbol,
            trigger_type=self._validate_enum("trigger_type", trigger_type, TriggerType),
            trigger_condition=trigger_condition,
            action=action,
            status=ConditionalOrderStatus.PENDING.value,
            oco_group_id=oco_group_id,
            expires_at=expires_at,
            created_at=now,
        )
        return self._add(entity)

    def link_siblings(self, first: ConditionalOrder, second: ConditionalOrder) -> None:
        first.linked_order_id = second.id
        second.linked_order_id = first.id
        self._flush()

    def count_active(self) -> int:
        return self._count(ConditionalOrder.status == ConditionalOrderStatus.PENDING.value)

    def get_pending(self, symbol: Optional[str] = None) -> List[ConditionalOrder]:
        stmt = select(ConditionalOrder).where(
            ConditionalOrder.status == ConditionalOrderStatus.PENDING.value
        )
        if symbol is not None:
            stmt = stmt.where(ConditionalOrder.symbol == symbol)
        return self._execute_query(stmt.order_by(ConditionalOrder.id))

    def get_by_group(self, group_id: str) -> List[ConditionalOrder]:
        return self._execute_query(
            select(ConditionalOrder)
            .where(ConditionalOrder.oco_group_id == group_id)
            .order_by(ConditionalOrder.id)
        )

    def get_pending_past_expiry(self, now: datetime) -> List[ConditionalOrder]:
        return self._execute_query(
            select(ConditionalOrder).where(
                ConditionalOrder.status == ConditionalOrderStatus.PENDING.value,
                ConditionalOrder.expires_at.is_not(None),
                ConditionalOrder.expires_at <= now,
            )
        )

    def count_triggered_since(self, since: datetime) -> int:
        return self._count(
            ConditionalOrder.triggered_at.is_not(None),
            ConditionalOrder.triggered_at >= since,
        )

    def count_by_status(self) -> dict:
        counts = {}
        for status in ConditionalOrderStatus:
            counts[status.value] = self._count(ConditionalOrder.status == status.value)
        return counts

    def transition_status(
        self,
        order_id: int,
        expected: Any,
        new: Any,
        **values: Any,
    ) -> Optional[ConditionalOrder]:
        """Compare-and-swap status change; None when the order already moved."""
        expected_value = self._validate_enum("status", expected, ConditionalOrderStatus)
        values["status"] = self._validate_enum("status", new, ConditionalOrderStatus)
        return self._compare_and_swap(order_id, expected_value, values)
