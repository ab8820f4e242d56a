"""
Position Management - DCA Manager.

============================================================
PURPOSE
============================================================
Adds to losing positions in rounds.

ROUND n (n = dca_count + 1) REQUIRES:
- DCA enabled and dca_count < max_rounds
- price <= original_entry * (1 - drop_pct_per_round * n)
- no BUY for the symbol within min_time_between_minutes
- floor(original_shares * size_multiplier ** (n - 1)) >= 1
- enough cash for the round

The original entry is taken from the entry trade, never from the
blended average, so the trigger ladder does not move after each
round.

============================================================
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from core.clock import ClockProtocol, SystemClock
from storage.models.trading import Position
from storage.repositories import TradeRepository
from execution_engine.order_manager import OrderManager
from execution_engine.types import ExecutionResult
from position_management.config import DCAConfig
from risk_management.types import PortfolioState


logger = logging.getLogger(__name__)


@dataclass
class DCAEvaluation:
    should_dca: bool
    reason: str = ""
    shares: int = 0
    new_avg_price: Optional[float] = None
    dca_round: Optional[int] = None


class DCAManager:
    """Evaluates and executes DCA rounds."""

    def __init__(
        self,
        session: Session,
        order_manager: OrderManager,
        clock: Optional[ClockProtocol] = None,
        config: Optional[DCAConfig] = None,
    ):
        self._trades = TradeRepository(session)
        self._order_manager = order_manager
        self._clock = clock or SystemClock()
        self._config = config or DCAConfig()
        self._config.validate()

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def _original_entry(self, position: Position) -> Tuple[float, float]:
        """(price, shares) of the initial fill."""
        entry = self._trades.get_entry_trade(position.symbol)
        if entry is not None and entry.shares > 0:
            return entry.entry_price, entry.shares
        invested = position.total_invested or position.shares * position.entry_price
        return position.entry_price, invested / position.entry_price

    def evaluate_position(
        self,
        symbol: str,
        price: float,
        position: Position,
        portfolio: PortfolioState,
    ) -> DCAEvaluation:
        cfg = self._config
        if not cfg.enabled:
            return DCAEvaluation(False, "DCA disabled")

        dca_count = position.dca_count or 0
        if dca_count >= cfg.max_rounds:
            return DCAEvaluation(False, f"Max DCA rounds reached ({cfg.max_rounds})")

        original_price, original_shares = self._original_entry(position)
        next_round = dca_count + 1
        required_drop = cfg.drop_pct_per_round * next_round
        trigger_price = original_price * (1 - required_drop)
        if price > trigger_price:
            drop = (original_price - price) / original_price
            return DCAEvaluation(False, f"Price not low enough (drop {drop:.2%}, need {required_drop:.2%})")

        last_buy = self._trades.get_last_buy(symbol)
        if last_buy is not None:
            minutes_since = self._clock.minutes_since(last_buy.entry_time)
            if minutes_since < cfg.min_time_between_minutes:
                return DCAEvaluation(
                    False,
                    f"Too soon since last buy ({minutes_since:.1f}m < {cfg.min_time_between_minutes:g}m)",
                )

        shares = math.floor(original_shares * cfg.size_multiplier ** dca_count)
        if shares < 1:
            return DCAEvaluation(False, f"Calculated DCA shares < 1 ({shares})")

        cost = shares * price
        if portfolio.cash < cost:
            return DCAEvaluation(False, f"Insufficient cash ({portfolio.cash:.2f} < {cost:.2f})")

        invested = position.total_invested or position.shares * position.entry_price
        new_avg_price = (invested + cost) / (position.shares + shares)

        logger.info(
            f"DCA trigger {symbol}: price {price:.4f} <= {trigger_price:.4f}, "
            f"round {next_round}, {shares} shares, new avg {new_avg_price:.4f}"
        )
        return DCAEvaluation(
            should_dca=True,
            reason=f"Price dropped {(1 - price / original_price):.2%} (trigger at {required_drop:.2%})",
            shares=shares,
            new_avg_price=new_avg_price,
            dca_round=next_round,
        )

    async def execute_dca(self, symbol: str, shares: int, price: float) -> ExecutionResult:
        return await self._order_manager.execute_dca_buy(symbol, shares, price)
