"""
Position Management - Position Tracker.

============================================================
PURPOSE
============================================================
Keeps open positions marked to market and decides which ones
must be closed.

CYCLE ORDER:
1. update_prices()          - quote, pnl, pnl % per position
2. update_trailing_stops()  - ratchet upward only
3. check_exit_conditions()  - at most one reason per position

EXIT PRECEDENCE (first match wins):
    stop-loss -> trailing stop -> take-profit -> ROI table
    -> model exit (exit flag, max hold days, price target)

SAFETY REQUIREMENTS:
- A missing quote or provider error keeps the prior price
- One symbol's failure never stops the others

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from sqlalchemy.orm import Session

from core.clock import ClockProtocol, SystemClock
from core.exceptions import BrokerError
from storage.models.enums import TradeSide
from storage.models.trading import Position
from storage.repositories import PositionRepository, TradeRepository
from position_management.config import ExitConfig
from position_management.roi_table import parse_roi_table, should_exit_by_roi

if TYPE_CHECKING:
    from execution_engine.adapters.base import BrokerAdapter


logger = logging.getLogger(__name__)


STOP_LOSS_REASON = "Stop-loss triggered"
TRAILING_STOP_REASON = "Trailing stop triggered"
TAKE_PROFIT_REASON = "Take-profit triggered"
ROI_REASON = "roi_table"
MODEL_EXIT_REASON = "Model exit signal"
MAX_HOLD_REASON = "Max hold duration reached"
PRICE_TARGET_REASON = "Price target reached"
EXTERNAL_CLOSE_REASON = "External close (broker sync)"


class QuoteProvider(ABC):
    """Latest price source."""

    @abstractmethod
    async def get_quote(self, symbol: str) -> Optional[float]:
        pass


@dataclass
class ExitCheckResult:
    positions_to_close: List[str] = field(default_factory=list)
    exit_reasons: Dict[str, str] = field(default_factory=dict)
    prices_updated: int = 0

    def add(self, symbol: str, reason: str) -> None:
        self.positions_to_close.append(symbol)
        self.exit_reasons[symbol] = reason


@dataclass
class SyncResult:
    externally_closed: List[str] = field(default_factory=list)
    unmanaged: List[str] = field(default_factory=list)
    quantity_mismatches: List[str] = field(default_factory=list)
    error: Optional[str] = None


class PositionTracker:
    """Marks positions to market and evaluates exit conditions."""

    def __init__(
        self,
        session: Session,
        quotes: QuoteProvider,
        clock: Optional[ClockProtocol] = None,
        config: Optional[ExitConfig] = None,
    ):
        self._positions = PositionRepository(session)
        self._trades = TradeRepository(session)
        self._quotes = quotes
        self._clock = clock or SystemClock()
        self._config = config or ExitConfig()
        self._config.validate()
        self._roi_table = parse_roi_table(self._config.roi_table)

    async def run_cycle(self) -> ExitCheckResult:
        updated = await self.update_prices()
        self.update_trailing_stops()
        result = self.check_exit_conditions()
        result.prices_updated = updated
        return result

    # --------------------------------------------------------
    # PRICES
    # --------------------------------------------------------

    async def update_prices(self) -> int:
        positions = self._positions.get_all()
        if not positions:
            return 0

        now = self._clock.now()
        updated = 0
        for position in positions:
            try:
                price = await self._quotes.get_quote(position.symbol)
            except Exception as e:
                logger.error(f"Quote failed for {position.symbol}, keeping prior price: {e}")
                continue
            if price is None or price <= 0:
                logger.debug(f"No quote for {position.symbol}, keeping prior price")
                continue

            self._positions.update_position(
                position,
                now,
                current_price=price,
                pnl=(price - position.entry_price) * position.shares,
                pnl_pct=(price - position.entry_price) / position.entry_price,
            )
            updated += 1

        self._positions.commit()
        logger.info(f"Positions updated: {updated}/{len(positions)}")
        return updated

    # --------------------------------------------------------
    # TRAILING STOPS
    # --------------------------------------------------------

    def update_trailing_stops(self) -> int:
        trailing = self._config.trailing
        if not trailing.enabled:
            return 0

        moved = 0
        now = self._clock.now()
        for position in self._positions.get_all():
            if position.current_price is None:
                continue
            pnl_pct = (position.current_price - position.entry_price) / position.entry_price
            if pnl_pct <= 0 or pnl_pct < trailing.activation_pct:
                continue

            distance = trailing.trail_pct
            if distance is None:
                if position.stop_loss is None:
                    continue
                distance = (position.entry_price - position.stop_loss) / position.entry_price
            if distance <= 0:
                continue

            new_stop = position.current_price * (1 - distance)
            current_stop = position.effective_stop
            if current_stop is not None and new_stop <= current_stop:
                continue

            self._positions.update_position(position, now, trailing_stop=new_stop)
            moved += 1
            logger.info(
                f"Trailing stop {position.symbol}: {current_stop} -> {new_stop:.4f} "
                f"(price {position.current_price:.4f}, pnl {pnl_pct:.2%})"
            )

        if moved:
            self._positions.commit()
        return moved

    # --------------------------------------------------------
    # EXIT CONDITIONS
    # --------------------------------------------------------

    def check_exit_conditions(self) -> ExitCheckResult:
        result = ExitCheckResult()
        for position in self._positions.get_all():
            try:
                reason = self._exit_reason(position)
            except Exception as e:
                logger.error(f"Exit check failed for {position.symbol}: {e}", exc_info=True)
                continue
            if reason is not None:
                result.add(position.symbol, reason)

        if result.positions_to_close:
            logger.info(f"Exit conditions triggered: {result.exit_reasons}")
        return result

    def _exit_reason(self, position: Position) -> Optional[str]:
        price = position.current_price
        if price is None:
            return None

        if position.stop_loss is not None and price <= position.stop_loss:
            return STOP_LOSS_REASON
        if position.trailing_stop is not None and price <= position.trailing_stop:
            return TRAILING_STOP_REASON
        if position.take_profit is not None and price >= position.take_profit:
            return TAKE_PROFIT_REASON

        now = self._clock.now()
        if self._config.roi_enabled and self._roi_table:
            current_return = (price - position.entry_price) / position.entry_price
            exit_now, threshold, age = should_exit_by_roi(
                self._roi_table, position.entry_time, current_return, now
            )
            if exit_now:
                logger.info(
                    f"ROI exit {position.symbol}: return {current_return:.2%} >= {threshold:.2%} "
                    f"at {age:.0f} min"
                )
                return ROI_REASON

        if not self._config.model_exits_enabled:
            return None

        conditions = position.exit_conditions or {}
        if conditions.get("exit_flag"):
            return MODEL_EXIT_REASON

        max_hold_days = conditions.get("max_hold_days")
        if max_hold_days:
            held_days = (now - position.entry_time).total_seconds() / 86400.0
            if held_days >= float(max_hold_days):
                return MAX_HOLD_REASON

        price_target = conditions.get("price_target")
        if price_target and price >= float(price_target):
            return PRICE_TARGET_REASON

        return None

    # --------------------------------------------------------
    # BROKER SYNC
    # --------------------------------------------------------

    async def sync_with_broker(self, adapter: "BrokerAdapter") -> SyncResult:
        """
        Reconcile DB positions with broker holdings.

        Positions the broker no longer holds were closed outside the
        engine: a SELL trade is recorded and the position removed.
        Unmanaged holdings and quantity mismatches are only logged.
        """
        result = SyncResult()
        try:
            broker_positions = await adapter.get_positions()
        except BrokerError as e:
            logger.error(f"Broker sync failed: {e}")
            result.error = str(e)
            return result

        held = {bp.symbol: bp for bp in broker_positions}
        db_positions = self._positions.get_all()
        tracked = {p.ticker for p in db_positions}
        now = self._clock.now()

        for position in db_positions:
            holding = held.get(position.ticker)
            if holding is None:
                exit_price = position.current_price or position.entry_price
                pnl = (exit_price - position.entry_price) * position.shares
                pnl_pct = (exit_price - position.entry_price) / position.entry_price
                self._trades.record_trade(
                    symbol=position.symbol,
                    ticker=position.ticker,
                    side=TradeSide.SELL,
                    shares=position.shares,
                    entry_price=position.entry_price,
                    exit_price=exit_price,
                    pnl=pnl,
                    pnl_pct=pnl_pct,
                    entry_time=position.entry_time,
                    exit_time=now,
                    exit_reason=EXTERNAL_CLOSE_REASON,
                    conviction=position.conviction,
                    plan_id=position.plan_id,
                    account_type=position.account_type,
                )
                self._positions.delete_position(position)
                self._positions.commit()
                result.externally_closed.append(position.symbol)
                logger.warning(f"{position.symbol} closed outside the engine, reconciled (pnl {pnl:.2f})")
                continue

            if abs(float(holding.quantity) - position.shares) > self._config.quantity_tolerance:
                result.quantity_mismatches.append(position.symbol)
                logger.warning(
                    f"Quantity mismatch for {position.symbol}: db={position.shares} broker={holding.quantity}"
                )

        for ticker, holding in held.items():
            if ticker not in tracked:
                result.unmanaged.append(ticker)
                logger.warning(f"Unmanaged broker holding {ticker} ({holding.quantity} shares)")

        logger.info(f"Broker sync complete: db={len(db_positions)} broker={len(held)}")
        return result
