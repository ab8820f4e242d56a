"""
Position Management - Partial-Exit Manager.

Tiered profit taking. The next unconsumed tier is
``tiers[partial_exit_count]``; once pnl % reaches its gain,
floor(shares * sell_pct) shares are sold. A tier never sells
fewer than one share or the whole position. Stop and target on
the remainder are unchanged.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

from execution_engine.order_manager import OrderManager
from execution_engine.types import ExecutionResult
from position_management.config import PartialExitConfig, PartialExitTier
from storage.models.trading import Position


logger = logging.getLogger(__name__)


@dataclass
class PartialExitEvaluation:
    should_exit: bool
    reason: str = ""
    tier: Optional[PartialExitTier] = None
    tier_number: Optional[int] = None
    shares_to_sell: int = 0


class PartialExitManager:
    """Evaluates and executes tiered partial exits."""

    def __init__(self, order_manager: OrderManager, config: Optional[PartialExitConfig] = None):
        self._order_manager = order_manager
        self._config = config or PartialExitConfig()
        self._config.validate()

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def get_remaining_tiers(self, position: Position) -> List[PartialExitTier]:
        return list(self._config.tiers[position.partial_exit_count or 0:])

    def evaluate_position(self, position: Position) -> PartialExitEvaluation:
        if not self._config.enabled:
            return PartialExitEvaluation(False, "Partial exits disabled")
        if position.current_price is None:
            return PartialExitEvaluation(False, "No current price")

        pnl_pct = (position.current_price - position.entry_price) / position.entry_price
        if pnl_pct <= 0:
            return PartialExitEvaluation(False, "Position not profitable")

        consumed = position.partial_exit_count or 0
        if consumed >= len(self._config.tiers):
            return PartialExitEvaluation(False, "All tiers executed")

        tier = self._config.tiers[consumed]
        tier_number = consumed + 1
        if pnl_pct < tier.pct_gain:
            return PartialExitEvaluation(
                False,
                f"Tier {tier_number} needs {tier.pct_gain:.1%} gain, current {pnl_pct:.1%}",
            )

        shares_to_sell = math.floor(position.shares * tier.sell_pct)
        if shares_to_sell < 1:
            return PartialExitEvaluation(False, f"Tier {tier_number} would sell less than 1 share")
        if shares_to_sell >= position.shares:
            return PartialExitEvaluation(False, f"Tier {tier_number} would sell all shares")

        logger.info(
            f"Partial exit tier {tier_number} for {position.symbol}: pnl {pnl_pct:.2%}, "
            f"sell {shares_to_sell} of {position.shares:g}"
        )
        return PartialExitEvaluation(
            should_exit=True,
            reason=f"Partial exit tier {tier_number}: {tier.pct_gain:.1%} gain reached",
            tier=tier,
            tier_number=tier_number,
            shares_to_sell=shares_to_sell,
        )

    async def execute_partial_exit(self, symbol: str, shares_to_sell: int, reason: str) -> ExecutionResult:
        return await self._order_manager.execute_partial_sell(symbol, shares_to_sell, reason)
