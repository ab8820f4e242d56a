"""
Tests for Conditional Orders.

============================================================
PURPOSE
============================================================
Trigger evaluation, OCO pairing, expiry and cancellation.

TEST PRINCIPLES:
- An order fires at most once
- At most one leg of an OCO pair ever fires
- Disabled engine does nothing

============================================================
"""

from datetime import timedelta

import pytest

from conditional_orders import (
    ConditionalOrderConfig,
    ConditionalOrderEngine,
    ConditionalOrderError,
    ConditionalOrderRequest,
    OrderAction,
)
from core.exceptions import InvalidConfigError
from storage.models.enums import ConditionalOrderStatus, TriggerType
from storage.repositories import ConditionalOrderRepository


def price_order(trigger=TriggerType.PRICE_BELOW, price=95.0, symbol="AAPL", **kwargs) -> ConditionalOrderRequest:
    return ConditionalOrderRequest(
        symbol=symbol,
        trigger_type=trigger,
        trigger_condition={"price": price},
        action=OrderAction(type="sell", pct=1.0),
        **kwargs,
    )


@pytest.fixture
def engine(session, clock):
    """Create an enabled conditional order engine."""
    return ConditionalOrderEngine(session, clock, ConditionalOrderConfig(enabled=True))


def status_of(session, order_id: int) -> str:
    return ConditionalOrderRepository(session).get(order_id).status


# =============================================================
# TEST: CREATION
# =============================================================

class TestCreation:
    """Tests for conditional order creation."""

    def test_disabled_engine_refuses(self, session, clock):
        """Creation raises while the feature is off."""
        engine = ConditionalOrderEngine(session, clock)

        with pytest.raises(ConditionalOrderError):
            engine.create_order(price_order())
        assert engine.check_triggers({"AAPL": 1.0}) == []

    def test_creates_pending(self, engine, session):
        """New orders start pending."""
        order = engine.create_order(price_order())

        assert order.status == ConditionalOrderStatus.PENDING.value
        assert order.action == {"type": "sell", "pct": 1.0}

    def test_max_active(self, session, clock):
        """Creation beyond max_active raises."""
        engine = ConditionalOrderEngine(session, clock, ConditionalOrderConfig(enabled=True, max_active=2))
        engine.create_order(price_order())
        engine.create_order(price_order(symbol="MSFT"))

        with pytest.raises(ConditionalOrderError):
            engine.create_order(price_order(symbol="TSLA"))

    def test_oco_counts_both_legs(self, session, clock):
        """An OCO pair needs room for two orders."""
        engine = ConditionalOrderEngine(session, clock, ConditionalOrderConfig(enabled=True, max_active=1))

        with pytest.raises(ConditionalOrderError):
            engine.create_oco_pair(price_order(), price_order(TriggerType.PRICE_ABOVE, 110.0))

    def test_expiry_in_past(self, engine, clock):
        """An order already expired at creation is refused."""
        with pytest.raises(ConditionalOrderError):
            engine.create_order(price_order(expires_at=clock.now() - timedelta(minutes=1)))

    @pytest.mark.parametrize("trigger,condition", [
        (TriggerType.PRICE_ABOVE, {"price": -1}),
        (TriggerType.PRICE_BELOW, {}),
        (TriggerType.TIME, {}),
        (TriggerType.INDICATOR, {"indicator": "rsi", "operator": "crosses", "value": 30}),
        (TriggerType.INDICATOR, {"indicator": "rsi", "operator": "below", "value": "low"}),
    ])
    def test_invalid_conditions(self, engine, trigger, condition):
        """Malformed trigger conditions are refused."""
        request = ConditionalOrderRequest("AAPL", trigger, condition, OrderAction(type="sell"))
        with pytest.raises(ConditionalOrderError):
            engine.create_order(request)

    def test_unknown_action(self, engine):
        """Only buy and sell actions are accepted."""
        request = price_order()
        request.action = OrderAction(type="short")
        with pytest.raises(ConditionalOrderError):
            engine.create_order(request)

    def test_oco_legs_share_symbol(self, engine):
        """OCO legs on different symbols are refused."""
        with pytest.raises(ConditionalOrderError):
            engine.create_oco_pair(price_order(), price_order(TriggerType.PRICE_ABOVE, 110.0, symbol="MSFT"))

    def test_invalid_config(self):
        """max_active must be positive."""
        with pytest.raises(InvalidConfigError):
            ConditionalOrderConfig(max_active=0).validate()


# =============================================================
# TEST: TRIGGERS
# =============================================================

class TestTriggers:
    """Tests for check_triggers."""

    def test_price_below_inclusive(self, engine, session):
        """Price triggers fire at the threshold."""
        order = engine.create_order(price_order(price=95.0))

        assert engine.check_triggers({"AAPL": 95.01}) == []
        fired = engine.check_triggers({"AAPL": 95.0})

        assert [t.order_id for t in fired] == [order.id]
        assert fired[0].action.type == "sell"
        assert status_of(session, order.id) == ConditionalOrderStatus.TRIGGERED.value

    def test_price_above(self, engine):
        """PRICE_ABOVE fires at or over the price."""
        engine.create_order(price_order(TriggerType.PRICE_ABOVE, 110.0))
        assert len(engine.check_triggers({"AAPL": 111.0})) == 1

    def test_missing_price_does_not_fire(self, engine):
        """No quote means no trigger."""
        engine.create_order(price_order())
        assert engine.check_triggers({"MSFT": 10.0}) == []

    def test_fires_once(self, engine):
        """A second check does not fire the same order again."""
        engine.create_order(price_order())

        assert len(engine.check_triggers({"AAPL": 90.0})) == 1
        assert engine.check_triggers({"AAPL": 90.0}) == []

    def test_time_trigger(self, engine, clock):
        """Time triggers fire once the moment has passed."""
        request = ConditionalOrderRequest(
            "AAPL",
            TriggerType.TIME,
            {"trigger_at": clock.now() + timedelta(hours=1)},
            OrderAction(type="buy", shares=5),
        )
        engine.create_order(request)

        assert engine.check_triggers({}) == []
        clock.advance(hours=1)
        fired = engine.check_triggers({})

        assert len(fired) == 1
        assert fired[0].action.shares == 5

    def test_indicator_trigger(self, engine):
        """Indicator triggers compare strictly."""
        request = ConditionalOrderRequest(
            "AAPL",
            TriggerType.INDICATOR,
            {"indicator": "rsi", "operator": "below", "value": 30},
            OrderAction(type="buy", shares=5),
        )
        engine.create_order(request)

        assert engine.check_triggers({}, {"AAPL": {"rsi": 30.0}}) == []
        assert len(engine.check_triggers({}, {"AAPL": {"rsi": 29.5}})) == 1

    def test_mark_executed(self, engine):
        """Only triggered orders can be marked executed."""
        order = engine.create_order(price_order())
        assert not engine.mark_executed(order.id)

        engine.check_triggers({"AAPL": 90.0})
        assert engine.mark_executed(order.id)


# =============================================================
# TEST: OCO
# =============================================================

class TestOCO:
    """Tests for one-cancels-other pairs."""

    def test_legs_linked(self, engine):
        """Legs share a group and reference each other."""
        stop, target = engine.create_oco_pair(price_order(), price_order(TriggerType.PRICE_ABOVE, 110.0))

        assert stop.oco_group_id == target.oco_group_id
        assert stop.linked_order_id == target.id
        assert target.linked_order_id == stop.id

    def test_one_leg_fires_sibling_cancelled(self, engine, session):
        """When one leg fires the other is cancelled in the same cycle."""
        stop, target = engine.create_oco_pair(price_order(), price_order(TriggerType.PRICE_ABOVE, 110.0))

        fired = engine.check_triggers({"AAPL": 112.0})

        assert [t.order_id for t in fired] == [target.id]
        assert status_of(session, stop.id) == ConditionalOrderStatus.CANCELLED.value
        assert engine.check_triggers({"AAPL": 90.0}) == []

    def test_both_conditions_true_fires_one(self, engine, session):
        """Even if both legs qualify, only one fires."""
        first, second = engine.create_oco_pair(
            price_order(TriggerType.PRICE_BELOW, 100.0),
            price_order(TriggerType.PRICE_ABOVE, 100.0),
        )

        fired = engine.check_triggers({"AAPL": 100.0})

        assert len(fired) == 1
        statuses = {status_of(session, first.id), status_of(session, second.id)}
        assert statuses == {ConditionalOrderStatus.TRIGGERED.value, ConditionalOrderStatus.CANCELLED.value}

    def test_cancel_group_twice(self, engine):
        """A second group cancel finds nothing."""
        stop, _ = engine.create_oco_pair(price_order(), price_order(TriggerType.PRICE_ABOVE, 110.0))

        assert engine.cancel_oco_group(stop.oco_group_id) == 2
        assert engine.cancel_oco_group(stop.oco_group_id) == 0


# =============================================================
# TEST: EXPIRY AND CANCELLATION
# =============================================================

class TestLifecycle:
    """Tests for expiry, cancellation and status."""

    def test_expire_old_orders(self, engine, session, clock):
        """Orders past expiry expire and never fire."""
        order = engine.create_order(price_order(expires_at=clock.now() + timedelta(hours=1)))

        clock.advance(hours=2)
        assert engine.check_triggers({"AAPL": 90.0}) == []
        assert engine.expire_old_orders() == 1
        assert engine.expire_old_orders() == 0
        assert status_of(session, order.id) == ConditionalOrderStatus.EXPIRED.value

    def test_cancel_order(self, engine):
        """Cancelling twice raises the second time."""
        order = engine.create_order(price_order())

        cancelled = engine.cancel_order(order.id)
        assert cancelled.status == ConditionalOrderStatus.CANCELLED.value
        with pytest.raises(ConditionalOrderError):
            engine.cancel_order(order.id)

    def test_cancel_unknown(self, engine):
        """Unknown ids raise."""
        with pytest.raises(ConditionalOrderError):
            engine.cancel_order(999)

    def test_cancel_all_for_symbol(self, engine):
        """Only the symbol's pending orders are cancelled."""
        engine.create_order(price_order())
        engine.create_oco_pair(price_order(), price_order(TriggerType.PRICE_ABOVE, 110.0))
        engine.create_order(price_order(symbol="MSFT"))

        assert engine.cancel_all_for_symbol("AAPL") == 3
        assert engine.pending_symbols() == ["MSFT"]

    def test_status(self, engine):
        """Status counts pending orders by type and today's triggers."""
        engine.create_order(price_order())
        engine.create_order(price_order(TriggerType.PRICE_ABOVE, 110.0, symbol="MSFT"))
        engine.check_triggers({"AAPL": 90.0})

        status = engine.get_status()

        assert status.active_count == 1
        assert status.triggered_today == 1
        assert status.by_type[TriggerType.PRICE_ABOVE.value] == 1
        assert status.by_type[TriggerType.TIME.value] == 0
