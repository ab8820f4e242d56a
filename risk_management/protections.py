"""
Risk Management - Protection Ledger.

============================================================
PURPOSE
============================================================
Runs after every close and turns recent trade outcomes into
pair locks:

- Cool-down: lock the closed pair for cooldown_minutes
- Stoploss guard: N stop exits in a window lock the pair or
  everything
- Max-drawdown lock: cumulative-return drawdown of closed
  trades in a window locks everything
- Low-profit guard: a pair whose average return in a window is
  below threshold is locked

SAFETY REQUIREMENTS:
- Each guard is isolated; one failing guard never stops the
  others and evaluation never raises

============================================================
"""

import logging
from datetime import timedelta
from typing import List, Optional

from core.clock import ClockProtocol, SystemClock
from storage.models.enums import LockReason
from storage.models.trading import PairLock, Trade
from storage.repositories import TradeRepository
from risk_management.config import ProtectionConfig
from risk_management.pair_locks import PairLockManager


logger = logging.getLogger(__name__)


def max_drawdown_of_returns(returns: List[float]) -> float:
    """Largest peak-to-trough fall of the cumulative return series."""
    cumulative = 0.0
    peak = 0.0
    worst = 0.0
    for value in returns:
        cumulative += value
        peak = max(peak, cumulative)
        worst = max(worst, peak - cumulative)
    return worst


class ProtectionLedger:
    """Evaluates protection guards after a position is closed."""

    def __init__(
        self,
        trades: TradeRepository,
        locks: PairLockManager,
        clock: Optional[ClockProtocol] = None,
        config: Optional[ProtectionConfig] = None,
    ):
        self._trades = trades
        self._locks = locks
        self._clock = clock or SystemClock()
        self._config = config or ProtectionConfig()
        self._config.validate()

    @property
    def config(self) -> ProtectionConfig:
        return self._config

    def evaluate_after_close(self, symbol: str, reason: str, pnl_pct: float) -> List[PairLock]:
        """Apply every enabled guard for a close. Returns the locks created."""
        created: List[PairLock] = []
        guards = (
            ("cooldown", lambda: self._apply_cooldown(symbol)),
            ("stoploss_guard", lambda: self._apply_stoploss_guard(symbol, reason)),
            ("max_drawdown_lock", self._apply_max_drawdown_lock),
            ("low_profit", lambda: self._apply_low_profit(symbol)),
        )
        for name, guard in guards:
            try:
                lock = guard()
            except Exception as e:
                logger.error(f"Protection {name} failed for {symbol}: {e}", exc_info=True)
                continue
            if lock is not None:
                created.append(lock)

        if created:
            logger.info(
                f"Protections after closing {symbol} ({reason}, {pnl_pct:+.2%}): "
                f"{[lock.reason for lock in created]}"
            )
        return created

    def _window_start(self, minutes: int):
        return self._clock.now() - timedelta(minutes=minutes)

    def _apply_cooldown(self, symbol: str) -> Optional[PairLock]:
        minutes = self._config.cooldown_minutes
        if minutes <= 0:
            return None
        return self._locks.lock_pair(symbol, minutes, LockReason.COOLDOWN)

    def _apply_stoploss_guard(self, symbol: str, reason: str) -> Optional[PairLock]:
        guard = self._config.stoploss_guard
        if not guard.enabled or "stop" not in (reason or "").lower():
            return None

        closed = self._trades.get_closed_trades(
            since=self._window_start(guard.lookback_minutes),
            symbol=symbol if guard.only_per_pair else None,
        )
        stop_exits = [t for t in closed if "stop" in (t.exit_reason or "").lower()]
        if len(stop_exits) < guard.trade_limit:
            return None

        logger.warning(f"Stoploss guard: {len(stop_exits)} stop exits in {guard.lookback_minutes} min")
        if guard.only_per_pair:
            return self._locks.lock_pair(symbol, guard.lock_minutes, LockReason.STOPLOSS_GUARD)
        return self._locks.lock_global(guard.lock_minutes, LockReason.STOPLOSS_GUARD)

    def _apply_max_drawdown_lock(self) -> Optional[PairLock]:
        guard = self._config.max_drawdown_lock
        if not guard.enabled:
            return None

        closed: List[Trade] = [
            t for t in self._trades.get_closed_trades(since=self._window_start(guard.lookback_minutes))
            if t.pnl_pct is not None
        ]
        if not closed:
            return None
        closed.sort(key=lambda t: t.exit_time)

        drawdown = max_drawdown_of_returns([t.pnl_pct for t in closed])
        if drawdown < guard.max_drawdown_pct:
            return None

        logger.warning(f"Max drawdown lock: {drawdown:.2%} over {len(closed)} closed trades")
        return self._locks.lock_global(guard.lock_minutes, LockReason.MAX_DRAWDOWN)

    def _apply_low_profit(self, symbol: str) -> Optional[PairLock]:
        guard = self._config.low_profit
        if not guard.enabled:
            return None

        returns = [
            t.pnl_pct for t in self._trades.get_closed_trades(
                since=self._window_start(guard.lookback_minutes),
                symbol=symbol,
            )
            if t.pnl_pct is not None
        ]
        if len(returns) < guard.trade_limit:
            return None

        average = sum(returns) / len(returns)
        if average >= guard.min_profit:
            return None

        logger.warning(f"Low profit guard: {symbol} averages {average:.2%} over {len(returns)} trades")
        return self._locks.lock_pair(symbol, guard.lock_minutes, LockReason.LOW_PROFIT)
