"""
Tests for the Execution Engine.

============================================================
PURPOSE
============================================================
Order Manager bookkeeping under simulated and broker fills,
protective orders and stale limit order replacement.

TEST PRINCIPLES:
- A failed fill never touches position state
- Every outcome leaves an Order record in a valid state
- Dry run and live share one bookkeeping path

============================================================
"""

from decimal import Decimal
from typing import Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from execution_engine import (
    BrokerExecution,
    BuyRequest,
    CloseRequest,
    ExecutionConfig,
    ExecutionResultCode,
    FillReport,
    OrderManager,
    OrderReplacer,
    OrderReplacerConfig,
    SimulatedExecution,
    resolve_exit_order_tag,
)
from execution_engine.adapters import MockBrokerAdapter
from monitoring.audit import AuditLogger
from position_management.tracker import QuoteProvider
from storage.models.enums import AuditEventType, OrderStatus, OrderTag, OrderType, TradeSide
from storage.repositories import OrderRepository, PositionRepository, TradeRepository


LIVE_CONFIG = dict(dry_run=False, order_timeout_seconds=0.5, poll_interval_seconds=0.01)


class DictQuotes(QuoteProvider):
    def __init__(self, prices: Dict[str, float]):
        self.prices = prices

    async def get_quote(self, symbol: str) -> Optional[float]:
        return self.prices.get(symbol)


def buy_request(**overrides) -> BuyRequest:
    fields = {
        "symbol": "AAPL",
        "ticker": "AAPL_US_EQ",
        "shares": 10,
        "price": 100.0,
        "stop_loss_pct": 0.05,
        "take_profit_pct": 0.15,
        "conviction": 70.0,
        "reasoning": "Breakout",
        "max_hold_days": 30,
    }
    fields.update(overrides)
    return BuyRequest(**fields)


@pytest.fixture
def audit(session, clock):
    return AuditLogger(session, clock)


@pytest.fixture
def simulated(session, clock, audit):
    """Order manager with simulated fills."""
    return OrderManager(session, SimulatedExecution(), audit, clock, ExecutionConfig())


@pytest.fixture
def broker():
    return MockBrokerAdapter()


@pytest.fixture
def live(session, clock, audit, broker):
    """Order manager filling through the mock broker."""
    config = ExecutionConfig(**LIVE_CONFIG)
    return OrderManager(session, BrokerExecution(broker, config), audit, clock, config)


# =============================================================
# TEST: SIMULATED EXECUTION
# =============================================================

class TestSimulatedOrderManager:
    """Tests for OrderManager with simulated fills."""

    @pytest.mark.asyncio
    async def test_buy_opens_position(self, simulated, session):
        """A buy records the trade, the position and a filled order."""
        result = await simulated.execute_buy(buy_request())

        assert result.success
        assert result.fill_price == 100.0
        position = PositionRepository(session).get_by_symbol("AAPL")
        assert position.shares == 10
        assert position.stop_loss == pytest.approx(95.0)
        assert position.take_profit == pytest.approx(115.0)
        assert position.total_invested == pytest.approx(1000.0)
        assert position.exit_conditions == {"max_hold_days": 30}

        entry = TradeRepository(session).get_entry_trade("AAPL")
        assert entry.id == result.trade_id
        assert OrderRepository(session).get(result.order_id).status == OrderStatus.FILLED.value

    @pytest.mark.asyncio
    async def test_buy_places_protective_orders(self, simulated, session):
        """Stop and take-profit orders rest after the entry."""
        await simulated.execute_buy(buy_request())

        position = PositionRepository(session).get_by_symbol("AAPL")
        orders = OrderRepository(session)
        stops = orders.get_active_orders(tag=OrderTag.STOPLOSS)
        targets = orders.get_active_orders(tag=OrderTag.TAKE_PROFIT)

        assert len(stops) == 1 and len(targets) == 1
        assert stops[0].status == OrderStatus.OPEN.value
        assert stops[0].stop_price == pytest.approx(95.0)
        assert position.stop_order_id == stops[0].broker_order_id
        assert position.take_profit_order_id == targets[0].broker_order_id

    @pytest.mark.asyncio
    async def test_duplicate_buy(self, simulated):
        """A second buy for a held symbol is refused."""
        await simulated.execute_buy(buy_request())
        result = await simulated.execute_buy(buy_request())

        assert result.code == ExecutionResultCode.DUPLICATE_POSITION

    @pytest.mark.asyncio
    async def test_invalid_buy(self, simulated, session):
        """Zero shares is an invalid request and writes nothing."""
        result = await simulated.execute_buy(buy_request(shares=0))

        assert result.code == ExecutionResultCode.INVALID_REQUEST
        assert OrderRepository(session).count() == 0

    @pytest.mark.asyncio
    async def test_close(self, simulated, session):
        """A close records pnl, removes the position and cancels protection."""
        await simulated.execute_buy(buy_request())
        result = await simulated.execute_close(CloseRequest("AAPL", "Stop-loss triggered", price=94.0))

        assert result.success
        assert result.tag == OrderTag.STOPLOSS
        assert result.pnl == pytest.approx(-60.0)
        assert result.pnl_pct == pytest.approx(-0.06)
        assert PositionRepository(session).get_by_symbol("AAPL") is None
        assert OrderRepository(session).get_active_orders() == []

        closed = TradeRepository(session).get_closed_trades(symbol="AAPL")
        assert closed[0].exit_reason == "Stop-loss triggered"

    @pytest.mark.asyncio
    async def test_close_without_position(self, simulated):
        """Closing an unknown symbol reports NO_POSITION."""
        result = await simulated.execute_close(CloseRequest("MSFT", "Manual close"))
        assert result.code == ExecutionResultCode.NO_POSITION

    @pytest.mark.asyncio
    async def test_dca_buy_reblends(self, simulated, session):
        """A DCA round updates shares, average and invested capital."""
        await simulated.execute_buy(buy_request())
        result = await simulated.execute_dca_buy("AAPL", 10, 90.0)

        assert result.success
        position = PositionRepository(session).get_by_symbol("AAPL")
        assert position.shares == 20
        assert position.entry_price == pytest.approx(95.0)
        assert position.total_invested == pytest.approx(1900.0)
        assert position.dca_count == 1
        assert TradeRepository(session).get_last_buy("AAPL").dca_round == 1

    @pytest.mark.asyncio
    async def test_dca_resizes_protection(self, simulated, session):
        """Protective orders are replaced for the new size."""
        await simulated.execute_buy(buy_request())
        await simulated.execute_dca_buy("AAPL", 10, 90.0)

        stops = OrderRepository(session).get_active_orders(tag=OrderTag.STOPLOSS)
        assert len(stops) == 1
        assert stops[0].requested_quantity == 20

    @pytest.mark.asyncio
    async def test_partial_sell(self, simulated, session):
        """A partial sell reduces shares and invested capital proportionally."""
        await simulated.execute_buy(buy_request())
        result = await simulated.execute_partial_sell("AAPL", 4, "Partial exit tier 1", price=106.0)

        assert result.success
        assert result.pnl == pytest.approx(24.0)
        position = PositionRepository(session).get_by_symbol("AAPL")
        assert position.shares == 6
        assert position.partial_exit_count == 1
        assert position.total_invested == pytest.approx(600.0)
        assert position.stop_loss == pytest.approx(95.0)

        trade = TradeRepository(session).get_closed_trades(symbol="AAPL", include_partial=True)[0]
        assert trade.is_partial_exit

    @pytest.mark.asyncio
    async def test_partial_sell_of_everything(self, simulated):
        """A partial sell cannot take the whole position."""
        await simulated.execute_buy(buy_request())
        result = await simulated.execute_partial_sell("AAPL", 10)

        assert result.code == ExecutionResultCode.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_outcomes_audited(self, simulated, audit):
        """Successes and failures both land in the audit trail."""
        await simulated.execute_buy(buy_request())
        await simulated.execute_close(CloseRequest("MSFT", "Manual close"))

        entries = audit.get_entries(event_type=AuditEventType.TRADE)
        assert len(entries) == 2


# =============================================================
# TEST: BROKER EXECUTION
# =============================================================

class TestBrokerOrderManager:
    """Tests for OrderManager filling through a broker adapter."""

    @pytest.mark.asyncio
    async def test_buy_fills_at_broker_price(self, live, broker, session):
        """Stops are derived from the actual fill."""
        broker.set_price("AAPL_US_EQ", Decimal("101"))

        result = await live.execute_buy(buy_request())

        assert result.success
        assert result.fill_price == 101.0
        assert result.slippage == pytest.approx(-1.0)
        position = PositionRepository(session).get_by_symbol("AAPL")
        assert position.stop_loss == pytest.approx(101.0 * 0.95)
        assert position.stop_order_id is not None

    @pytest.mark.asyncio
    async def test_rejection_leaves_no_position(self, live, broker, session):
        """A broker rejection fails the order and nothing else."""
        broker.inject_error("BRK_INSUFFICIENT_FUNDS")

        result = await live.execute_buy(buy_request())

        assert result.code == ExecutionResultCode.REJECTED
        assert PositionRepository(session).get_by_symbol("AAPL") is None
        assert OrderRepository(session).get(result.order_id).status == OrderStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_broker_unavailable(self, live, broker, session):
        """An unreachable broker is a BROKER_ERROR result, not an exception."""
        broker.set_unavailable(True)

        result = await live.execute_buy(buy_request())

        assert result.code == ExecutionResultCode.BROKER_ERROR
        assert PositionRepository(session).count_open() == 0

    @pytest.mark.asyncio
    async def test_partial_fill_times_out(self, live, broker, session):
        """A partial fill that never completes is cancelled and reported."""
        broker.inject_partial_fill()

        result = await live.execute_buy(buy_request())

        assert result.code == ExecutionResultCode.PARTIAL_FILL
        assert result.filled_quantity == 5
        assert PositionRepository(session).get_by_symbol("AAPL") is None
        assert OrderRepository(session).get(result.order_id).status == OrderStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_close_cancels_broker_protection(self, live, broker, session):
        """Resting broker orders are cancelled before the closing sell."""
        await live.execute_buy(buy_request())
        position = PositionRepository(session).get_by_symbol("AAPL")
        stop_id = position.stop_order_id

        result = await live.execute_close(CloseRequest("AAPL", "Manual close by alice"))

        assert result.success
        assert result.tag == OrderTag.EXIT
        assert broker.get_order(stop_id).status == "CANCELLED"

    @pytest.mark.asyncio
    async def test_rejected_close_restores_protection(self, live, broker, session):
        """A close the broker refuses leaves the position open with fresh stop and target orders."""
        await live.execute_buy(buy_request())
        position = PositionRepository(session).get_by_symbol("AAPL")
        old_stop, old_target = position.stop_order_id, position.take_profit_order_id
        broker.inject_error("BRK_MARKET_CLOSED")

        result = await live.execute_close(CloseRequest("AAPL", "Manual close by alice"))

        assert result.code == ExecutionResultCode.REJECTED
        position = PositionRepository(session).get_by_symbol("AAPL")
        assert position.shares == 10
        assert broker.get_order(old_stop).status == "CANCELLED"
        assert broker.get_order(old_target).status == "CANCELLED"
        assert position.stop_order_id not in (None, old_stop)
        assert position.take_profit_order_id not in (None, old_target)
        assert broker.get_order(position.stop_order_id).status == "NEW"
        assert broker.get_order(position.take_profit_order_id).status == "NEW"
        stop_record = OrderRepository(session).get_by_broker_id(position.stop_order_id)
        assert stop_record.status == OrderStatus.OPEN.value
        assert stop_record.requested_quantity == 10


# =============================================================
# TEST: EXIT ORDER TAGS
# =============================================================

class TestExitOrderTag:
    """Tests for resolve_exit_order_tag."""

    @pytest.mark.parametrize("reason,tag", [
        ("Take-profit triggered", OrderTag.TAKE_PROFIT),
        ("take profit hit", OrderTag.TAKE_PROFIT),
        ("Stop-loss triggered", OrderTag.STOPLOSS),
        ("stoploss on exchange", OrderTag.STOPLOSS),
        ("Partial exit tier 1", OrderTag.PARTIAL_EXIT),
        ("Trailing stop triggered", OrderTag.EXIT),
        ("roi_table", OrderTag.EXIT),
    ])
    def test_mapping(self, reason, tag):
        """Exit reasons map to order tags."""
        assert resolve_exit_order_tag(reason) == tag


# =============================================================
# TEST: ORDER REPLACER
# =============================================================

def open_limit_order(session, clock, tag=OrderTag.EXIT, price=100.0, broker_order_id="lim-1"):
    orders = OrderRepository(session)
    order = orders.create_order(
        symbol="AAPL",
        side=TradeSide.SELL,
        tag=tag,
        requested_quantity=10,
        now=clock.now(),
        order_type=OrderType.LIMIT,
        requested_price=price,
    )
    orders.set_status(order, OrderStatus.OPEN, clock.now(), broker_order_id=broker_order_id)
    orders.commit()
    return order


class TestOrderReplacer:
    """Tests for OrderReplacer."""

    def replacer(self, session, clock, strategy=None, price=105.0, quotes=None, **overrides):
        config = OrderReplacerConfig(enabled=True, **overrides)
        return OrderReplacer(
            session, strategy or SimulatedExecution(), quotes or DictQuotes({"AAPL": price}), clock, config
        )

    @pytest.mark.asyncio
    async def test_disabled(self, session, clock):
        """A disabled replacer checks nothing."""
        open_limit_order(session, clock)
        replacer = OrderReplacer(session, SimulatedExecution(), DictQuotes({}), clock)

        result = await replacer.process_open_orders()

        assert result.checked == 0

    @pytest.mark.asyncio
    async def test_replaces_stale_order(self, session, clock):
        """A drifted stale limit is cancelled and re-placed at market."""
        order = open_limit_order(session, clock)
        clock.advance(minutes=10)

        result = await self.replacer(session, clock).process_open_orders()

        assert result.replaced == 1
        orders = OrderRepository(session)
        old = orders.get(order.id)
        assert old.status == OrderStatus.CANCELLED.value
        new = orders.get(old.replaced_by_order_id)
        assert new.status == OrderStatus.OPEN.value
        assert new.requested_price == 105.0
        assert orders.chain_length(new) == 1

    @pytest.mark.asyncio
    async def test_young_order_skipped(self, session, clock):
        """Orders younger than the replace age are left alone."""
        open_limit_order(session, clock)
        clock.advance(seconds=60)

        result = await self.replacer(session, clock).process_open_orders()

        assert result.skipped == 1 and result.replaced == 0

    @pytest.mark.asyncio
    async def test_protective_order_never_replaced(self, session, clock):
        """Stop-loss orders are never replaced."""
        open_limit_order(session, clock, tag=OrderTag.STOPLOSS)
        clock.advance(minutes=10)

        result = await self.replacer(session, clock, price=150.0).process_open_orders()

        assert result.replaced == 0
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_small_deviation_skipped(self, session, clock):
        """Deviation at or below the threshold keeps the order."""
        open_limit_order(session, clock)
        clock.advance(minutes=10)

        result = await self.replacer(session, clock, price=100.5).process_open_orders()

        assert result.replaced == 0

    @pytest.mark.asyncio
    async def test_max_replacements(self, session, clock):
        """A chain stops growing at the maximum."""
        open_limit_order(session, clock)
        clock.advance(minutes=10)
        quotes = DictQuotes({"AAPL": 105.0})
        replacer = self.replacer(session, clock, quotes=quotes, max_replacements=1)

        assert (await replacer.process_open_orders()).replaced == 1
        clock.advance(minutes=10)
        quotes.prices["AAPL"] = 120.0
        second = await replacer.process_open_orders()

        assert second.replaced == 0
        assert second.skipped == 1

    @pytest.mark.asyncio
    async def test_filled_during_cancel(self, session, clock):
        """A fill discovered after the cancel is recorded instead of replaced."""
        order = open_limit_order(session, clock)
        clock.advance(minutes=10)
        strategy = MagicMock()
        strategy.cancel_order = AsyncMock(return_value=False)
        strategy.get_fill = AsyncMock(return_value=FillReport(
            code=ExecutionResultCode.SUCCESS,
            broker_order_id="lim-1",
            fill_price=100.0,
            filled_quantity=10,
        ))
        strategy.place_resting_order = AsyncMock()

        result = await self.replacer(session, clock, strategy=strategy).process_open_orders()

        assert result.filled_during_cancel == 1
        assert OrderRepository(session).get(order.id).status == OrderStatus.FILLED.value
        strategy.place_resting_order.assert_not_awaited()
