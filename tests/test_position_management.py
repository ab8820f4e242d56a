"""
Tests for Position Management.

============================================================
PURPOSE
============================================================
Mark to market, trailing stops, exit precedence, the ROI table,
broker reconciliation, DCA rounds and tiered partial exits.

TEST PRINCIPLES:
- Trailing stops only ever move up
- The first matching exit reason wins
- DCA triggers are inclusive and measured from the original entry
- Share counts are floored

============================================================
"""

from datetime import timedelta
from decimal import Decimal
from typing import Dict, Optional, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.exceptions import InvalidConfigError
from execution_engine.adapters import MockBrokerAdapter
from position_management import (
    DCAConfig,
    DCAManager,
    ExitConfig,
    PartialExitConfig,
    PartialExitManager,
    PartialExitTier,
    PositionTracker,
    QuoteProvider,
    get_roi_threshold,
    parse_roi_table,
    should_exit_by_roi,
)
from position_management.tracker import (
    EXTERNAL_CLOSE_REASON,
    MAX_HOLD_REASON,
    MODEL_EXIT_REASON,
    PRICE_TARGET_REASON,
    ROI_REASON,
    STOP_LOSS_REASON,
    TAKE_PROFIT_REASON,
    TRAILING_STOP_REASON,
)
from risk_management.types import PortfolioState
from storage.models.enums import TradeSide
from storage.models.trading import Position
from storage.repositories import PositionRepository, TradeRepository


ROI_TABLE = {0: 0.06, 60: 0.04, 240: 0.02}


class DictQuotes(QuoteProvider):
    """Quotes from a dict; exception values are raised."""

    def __init__(self, prices: Optional[Dict[str, Union[float, Exception]]] = None):
        self.prices = dict(prices or {})

    async def get_quote(self, symbol: str) -> Optional[float]:
        value = self.prices.get(symbol)
        if isinstance(value, Exception):
            raise value
        return value


def open_position(session, clock, symbol="AAPL", shares=10.0, entry=100.0, **fields) -> Position:
    repo = PositionRepository(session)
    entry_time = fields.pop("entry_time", clock.now())
    position = repo.create_position(
        symbol=symbol,
        ticker=f"{symbol}_US_EQ",
        shares=shares,
        entry_price=entry,
        entry_time=entry_time,
        total_invested=shares * entry,
        **fields,
    )
    repo.commit()
    return position


def record_buy(session, symbol, shares, price, entry_time, dca_round=0):
    trades = TradeRepository(session)
    trade = trades.record_trade(
        symbol=symbol,
        ticker=f"{symbol}_US_EQ",
        side=TradeSide.BUY,
        shares=shares,
        entry_price=price,
        entry_time=entry_time,
        dca_round=dca_round,
    )
    trades.commit()
    return trade


# =============================================================
# TEST: ROI TABLE
# =============================================================

class TestRoiTable:
    """Tests for the ROI table lookup."""

    @pytest.mark.parametrize("age,expected", [(100, 0.04), (30, 0.06), (500, 0.02), (60, 0.04)])
    def test_threshold_by_age(self, age, expected):
        """The largest age key not above the position age applies."""
        assert get_roi_threshold(ROI_TABLE, age) == expected

    def test_younger_than_smallest_key(self):
        """Positions younger than every key have no threshold."""
        assert get_roi_threshold({10: 0.05}, 5) is None
        assert get_roi_threshold({}, 5) is None

    def test_inclusive_exit(self, clock):
        """A return equal to the threshold exits."""
        entry = clock.now() - timedelta(minutes=90)
        exit_now, threshold, age = should_exit_by_roi(ROI_TABLE, entry, 0.04, clock.now())

        assert exit_now
        assert threshold == 0.04
        assert age == pytest.approx(90.0)

    def test_parse_json(self):
        """JSON tables are accepted with string keys."""
        assert parse_roi_table('{"0": 0.05, "120": "0.01"}') == {0: 0.05, 120: 0.01}

    def test_parse_invalid(self):
        """Invalid tables yield an empty table."""
        assert parse_roi_table("not json") == {}
        assert parse_roi_table([1, 2]) == {}
        assert parse_roi_table({"x": 0.05, "30": 0.02}) == {30: 0.02}


# =============================================================
# TEST: TRACKER
# =============================================================

class TestPositionTracker:
    """Tests for PositionTracker."""

    @pytest.mark.asyncio
    async def test_prices_and_pnl(self, session, clock):
        """Quotes update price and pnl."""
        open_position(session, clock, shares=10, entry=100.0)
        tracker = PositionTracker(session, DictQuotes({"AAPL": 102.0}), clock, ExitConfig(roi_enabled=False))

        result = await tracker.run_cycle()

        position = PositionRepository(session).get_by_symbol("AAPL")
        assert result.prices_updated == 1
        assert position.current_price == 102.0
        assert position.pnl == pytest.approx(20.0)
        assert position.pnl_pct == pytest.approx(0.02)

    @pytest.mark.asyncio
    async def test_missing_quote_keeps_price(self, session, clock):
        """A missing or failing quote leaves the prior price."""
        open_position(session, clock, symbol="AAPL", current_price=101.0)
        open_position(session, clock, symbol="MSFT", current_price=201.0, entry=200.0)
        quotes = DictQuotes({"MSFT": ConnectionError("feed down")})
        tracker = PositionTracker(session, quotes, clock, ExitConfig(roi_enabled=False))

        assert await tracker.update_prices() == 0

        repo = PositionRepository(session)
        assert repo.get_by_symbol("AAPL").current_price == 101.0
        assert repo.get_by_symbol("MSFT").current_price == 201.0

    @pytest.mark.asyncio
    async def test_trailing_stop_only_rises(self, session, clock):
        """The trailing stop follows price up and never comes down."""
        open_position(session, clock, stop_loss=95.0)
        quotes = DictQuotes({"AAPL": 110.0})
        tracker = PositionTracker(session, quotes, clock, ExitConfig(roi_enabled=False))
        repo = PositionRepository(session)

        result = await tracker.run_cycle()
        assert result.positions_to_close == []
        assert repo.get_by_symbol("AAPL").trailing_stop == pytest.approx(104.5)

        quotes.prices["AAPL"] = 105.0
        result = await tracker.run_cycle()
        assert result.positions_to_close == []
        assert repo.get_by_symbol("AAPL").trailing_stop == pytest.approx(104.5)

        quotes.prices["AAPL"] = 104.0
        result = await tracker.run_cycle()
        assert result.exit_reasons == {"AAPL": TRAILING_STOP_REASON}
        assert repo.get_by_symbol("AAPL").trailing_stop == pytest.approx(104.5)

    @pytest.mark.asyncio
    async def test_trailing_activation(self, session, clock):
        """Below the activation gain the stop does not trail."""
        open_position(session, clock, stop_loss=95.0)
        config = ExitConfig(roi_enabled=False)
        config.trailing.activation_pct = 0.05
        tracker = PositionTracker(session, DictQuotes({"AAPL": 103.0}), clock, config)

        await tracker.run_cycle()

        assert PositionRepository(session).get_by_symbol("AAPL").trailing_stop is None

    @pytest.mark.asyncio
    async def test_stop_loss_first(self, session, clock):
        """Stop-loss wins over every other reason."""
        open_position(session, clock, stop_loss=95.0, take_profit=115.0, exit_conditions={"exit_flag": True})
        tracker = PositionTracker(session, DictQuotes({"AAPL": 94.0}), clock)

        result = await tracker.run_cycle()

        assert result.exit_reasons == {"AAPL": STOP_LOSS_REASON}

    @pytest.mark.asyncio
    async def test_take_profit_before_roi(self, session, clock):
        """Take-profit is reported ahead of the ROI table."""
        open_position(session, clock, stop_loss=95.0, take_profit=115.0)
        tracker = PositionTracker(session, DictQuotes({"AAPL": 120.0}), clock)

        result = await tracker.run_cycle()

        assert result.exit_reasons == {"AAPL": TAKE_PROFIT_REASON}

    @pytest.mark.asyncio
    async def test_roi_exit_by_age(self, session, clock):
        """A 4.5% gain exits after an hour but not before."""
        open_position(session, clock, symbol="OLD", stop_loss=90.0, entry_time=clock.now() - timedelta(minutes=100))
        open_position(session, clock, symbol="NEW", stop_loss=90.0, entry_time=clock.now() - timedelta(minutes=30))
        tracker = PositionTracker(session, DictQuotes({"OLD": 104.5, "NEW": 104.5}), clock)

        result = await tracker.run_cycle()

        assert result.exit_reasons == {"OLD": ROI_REASON}

    @pytest.mark.asyncio
    async def test_model_exits(self, session, clock):
        """Exit flag, max hold days and price target close positions."""
        open_position(session, clock, symbol="FLAG", exit_conditions={"exit_flag": True})
        open_position(
            session, clock, symbol="HOLD",
            entry_time=clock.now() - timedelta(days=31),
            exit_conditions={"max_hold_days": 30},
        )
        open_position(session, clock, symbol="TGT", exit_conditions={"price_target": 103.0})
        quotes = DictQuotes({"FLAG": 100.0, "HOLD": 100.0, "TGT": 103.5})
        tracker = PositionTracker(session, quotes, clock)

        result = await tracker.run_cycle()

        assert result.exit_reasons == {
            "FLAG": MODEL_EXIT_REASON,
            "HOLD": MAX_HOLD_REASON,
            "TGT": PRICE_TARGET_REASON,
        }

    @pytest.mark.asyncio
    async def test_model_exits_disabled(self, session, clock):
        """Model exits can be switched off."""
        open_position(session, clock, exit_conditions={"exit_flag": True})
        tracker = PositionTracker(session, DictQuotes({"AAPL": 100.0}), clock, ExitConfig(model_exits_enabled=False))

        result = await tracker.run_cycle()

        assert result.positions_to_close == []

    @pytest.mark.asyncio
    async def test_sync_with_broker(self, session, clock):
        """Broker sync reconciles external closes and reports drift."""
        open_position(session, clock, symbol="AAPL", shares=10)
        open_position(session, clock, symbol="MSFT", shares=5, entry=200.0, current_price=210.0)
        adapter = MockBrokerAdapter()
        adapter.set_position("AAPL_US_EQ", Decimal("12"), Decimal("100"))
        adapter.set_position("TSLA_US_EQ", Decimal("3"), Decimal("250"))
        tracker = PositionTracker(session, DictQuotes(), clock)

        result = await tracker.sync_with_broker(adapter)

        assert result.externally_closed == ["MSFT"]
        assert result.quantity_mismatches == ["AAPL"]
        assert result.unmanaged == ["TSLA_US_EQ"]
        assert PositionRepository(session).get_by_symbol("MSFT") is None

        trade = TradeRepository(session).get_closed_trades(symbol="MSFT")[0]
        assert trade.exit_reason == EXTERNAL_CLOSE_REASON
        assert trade.pnl == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_sync_broker_unavailable(self, session, clock):
        """An unreachable broker changes nothing."""
        open_position(session, clock)
        adapter = MockBrokerAdapter()
        adapter.set_unavailable(True)
        tracker = PositionTracker(session, DictQuotes(), clock)

        result = await tracker.sync_with_broker(adapter)

        assert result.error is not None
        assert PositionRepository(session).get_by_symbol("AAPL") is not None


# =============================================================
# TEST: DCA
# =============================================================

class TestDCAManager:
    """Tests for DCAManager."""

    @pytest.fixture
    def portfolio(self):
        return PortfolioState(cash=50_000.0, total_value=100_000.0)

    def manager(self, session, clock, **overrides):
        config = DCAConfig(enabled=True, **overrides)
        return DCAManager(session, AsyncMock(), clock, config)

    def test_disabled(self, session, clock, portfolio):
        """Disabled DCA never triggers."""
        position = open_position(session, clock)
        dca = DCAManager(session, AsyncMock(), clock, DCAConfig())

        assert not dca.evaluate_position("AAPL", 80.0, position, portfolio).should_dca

    def test_trigger_is_inclusive(self, session, clock, portfolio):
        """A price exactly at the round trigger qualifies."""
        position = open_position(session, clock, entry_time=clock.now() - timedelta(hours=2))
        record_buy(session, "AAPL", 10, 100.0, clock.now() - timedelta(hours=2))
        dca = self.manager(session, clock)

        evaluation = dca.evaluate_position("AAPL", 95.0, position, portfolio)

        assert evaluation.should_dca
        assert evaluation.dca_round == 1
        assert evaluation.shares == 10
        assert evaluation.new_avg_price == pytest.approx(97.5)

    def test_price_above_trigger(self, session, clock, portfolio):
        """Just above the trigger does nothing."""
        position = open_position(session, clock, entry_time=clock.now() - timedelta(hours=2))
        record_buy(session, "AAPL", 10, 100.0, clock.now() - timedelta(hours=2))

        evaluation = self.manager(session, clock).evaluate_position("AAPL", 95.01, position, portfolio)

        assert not evaluation.should_dca
        assert "not low enough" in evaluation.reason

    def test_ladder_uses_original_entry(self, session, clock, portfolio):
        """Round two measures from the first fill, not the blended average."""
        position = open_position(
            session, clock, shares=20, entry=97.5, dca_count=1,
            entry_time=clock.now() - timedelta(hours=5),
        )
        record_buy(session, "AAPL", 10, 100.0, clock.now() - timedelta(hours=5))
        record_buy(session, "AAPL", 10, 95.0, clock.now() - timedelta(hours=3), dca_round=1)
        dca = self.manager(session, clock, size_multiplier=1.5)

        assert not dca.evaluate_position("AAPL", 92.0, position, portfolio).should_dca

        evaluation = dca.evaluate_position("AAPL", 90.0, position, portfolio)
        assert evaluation.should_dca
        assert evaluation.dca_round == 2
        assert evaluation.shares == 15

    def test_too_soon(self, session, clock, portfolio):
        """Rounds are spaced by the minimum interval."""
        position = open_position(session, clock, entry_time=clock.now() - timedelta(minutes=30))
        record_buy(session, "AAPL", 10, 100.0, clock.now() - timedelta(minutes=30))

        evaluation = self.manager(session, clock).evaluate_position("AAPL", 90.0, position, portfolio)

        assert not evaluation.should_dca
        assert "Too soon" in evaluation.reason

    def test_max_rounds(self, session, clock, portfolio):
        """No rounds beyond the maximum."""
        position = open_position(session, clock, dca_count=3)
        evaluation = self.manager(session, clock).evaluate_position("AAPL", 50.0, position, portfolio)
        assert not evaluation.should_dca

    def test_insufficient_cash(self, session, clock):
        """A round the cash cannot cover is skipped."""
        position = open_position(session, clock, entry_time=clock.now() - timedelta(hours=2))
        record_buy(session, "AAPL", 10, 100.0, clock.now() - timedelta(hours=2))
        portfolio = PortfolioState(cash=100.0, total_value=10_000.0)

        evaluation = self.manager(session, clock).evaluate_position("AAPL", 90.0, position, portfolio)

        assert not evaluation.should_dca
        assert "Insufficient cash" in evaluation.reason

    @pytest.mark.asyncio
    async def test_execute_delegates(self, session, clock):
        """Execution goes through the order manager."""
        order_manager = MagicMock()
        order_manager.execute_dca_buy = AsyncMock(return_value="result")
        dca = DCAManager(session, order_manager, clock, DCAConfig(enabled=True))

        assert await dca.execute_dca("AAPL", 10, 95.0) == "result"
        order_manager.execute_dca_buy.assert_awaited_once_with("AAPL", 10, 95.0)

    def test_invalid_config(self, session, clock):
        """Drop per round must be a fraction."""
        with pytest.raises(InvalidConfigError):
            DCAManager(session, AsyncMock(), clock, DCAConfig(drop_pct_per_round=1.5))


# =============================================================
# TEST: PARTIAL EXITS
# =============================================================

def held(shares=100.0, price=106.0, consumed=0) -> Position:
    return Position(
        symbol="AAPL",
        ticker="AAPL_US_EQ",
        shares=shares,
        entry_price=100.0,
        current_price=price,
        partial_exit_count=consumed,
    )


class TestPartialExitManager:
    """Tests for PartialExitManager."""

    @pytest.fixture
    def manager(self):
        return PartialExitManager(AsyncMock(), PartialExitConfig(enabled=True))

    def test_disabled(self):
        """Disabled partial exits never trigger."""
        assert not PartialExitManager(AsyncMock()).evaluate_position(held()).should_exit

    def test_first_tier(self, manager):
        """Tier one sells a floored third at 5% gain."""
        evaluation = manager.evaluate_position(held())

        assert evaluation.should_exit
        assert evaluation.tier_number == 1
        assert evaluation.shares_to_sell == 33

    def test_below_tier_gain(self, manager):
        """Below the tier gain nothing is sold."""
        assert not manager.evaluate_position(held(price=104.0)).should_exit

    def test_losing_position(self, manager):
        """Losing positions are never trimmed."""
        assert not manager.evaluate_position(held(price=95.0)).should_exit

    def test_second_tier(self, manager):
        """Tiers are consumed in order."""
        evaluation = manager.evaluate_position(held(shares=67.0, price=111.0, consumed=1))

        assert evaluation.tier_number == 2
        assert evaluation.shares_to_sell == 33

    def test_all_tiers_consumed(self, manager):
        """Nothing is left after the last tier."""
        position = held(price=130.0, consumed=2)
        assert not manager.evaluate_position(position).should_exit
        assert manager.get_remaining_tiers(position) == []

    def test_less_than_one_share(self, manager):
        """A tier that floors to zero shares is skipped."""
        evaluation = manager.evaluate_position(held(shares=2.0))
        assert not evaluation.should_exit
        assert "less than 1 share" in evaluation.reason

    def test_remaining_tiers(self, manager):
        """Remaining tiers start after the consumed ones."""
        assert manager.get_remaining_tiers(held(consumed=1)) == [PartialExitTier(0.10, 0.5)]

    def test_tiers_must_increase(self):
        """Tier gains must be increasing."""
        config = PartialExitConfig(tiers=[PartialExitTier(0.10, 0.5), PartialExitTier(0.05, 0.5)])
        with pytest.raises(InvalidConfigError):
            PartialExitManager(AsyncMock(), config)

    @pytest.mark.asyncio
    async def test_execute_delegates(self):
        """Execution goes through the order manager."""
        order_manager = MagicMock()
        order_manager.execute_partial_sell = AsyncMock(return_value="result")
        manager = PartialExitManager(order_manager, PartialExitConfig(enabled=True))

        assert await manager.execute_partial_exit("AAPL", 33, "tier 1") == "result"
        order_manager.execute_partial_sell.assert_awaited_once_with("AAPL", 33, "tier 1")
