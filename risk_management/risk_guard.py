"""
Risk Management - Risk Guard.

============================================================
PURPOSE
============================================================
Ordered pre-trade gate. Short-circuits on the first failure:

0. pair lock (symbol or global)          - all sides
1. open positions below maximum          - BUY
2. position size within maximum          - BUY
3. sector position count and resulting
   sector exposure within max            - BUY, sector known
4. correlation with holdings within max  - BUY
5. stop-loss distance within [min, max]  - BUY
6. dollar risk within max risk per trade - BUY
7. position value within available cash  - BUY

Independent throttles outside the gate:
- losing-streak size multiplier
- daily loss check
- drawdown report (never blocks)

============================================================
"""

import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from storage.models.enums import TradeSide
from storage.repositories import RepositoryException, TradeRepository
from risk_management.config import RiskConfig
from risk_management.correlation import CorrelationAnalyzer
from risk_management.pair_locks import PairLockManager
from risk_management.types import DrawdownReport, PortfolioState, TradeProposal, ValidationResult


logger = logging.getLogger(__name__)


STREAK_LOOKBACK = 50


class RiskGuard:
    """Pre-trade risk gate and sizing throttles."""

    def __init__(
        self,
        trades: TradeRepository,
        locks: PairLockManager,
        correlation: Optional[CorrelationAnalyzer] = None,
        config: Optional[RiskConfig] = None,
    ):
        self._trades = trades
        self._locks = locks
        self._correlation = correlation
        self._config = config or RiskConfig()
        self._config.validate()

    @property
    def config(self) -> RiskConfig:
        return self._config

    # --------------------------------------------------------
    # GATE
    # --------------------------------------------------------

    def validate_trade(self, proposal: TradeProposal, portfolio: PortfolioState) -> ValidationResult:
        result = self._validate(proposal, portfolio)
        if result.allowed:
            logger.debug(f"Risk gate passed for {proposal.side.value} {proposal.symbol}")
        else:
            logger.info(f"Risk gate blocked {proposal.side.value} {proposal.symbol} [{result.check}]: {result.reason}")
        return result

    def _validate(self, proposal: TradeProposal, portfolio: PortfolioState) -> ValidationResult:
        cfg = self._config

        lock = self._locks.is_pair_locked(proposal.symbol)
        if lock is not None:
            return ValidationResult.block(
                "pair_lock",
                f"{lock.symbol} locked until {lock.lock_end.isoformat()} ({lock.reason})",
            )

        if TradeSide(proposal.side) != TradeSide.BUY:
            return ValidationResult.ok()

        if portfolio.open_positions >= cfg.max_positions:
            return ValidationResult.block(
                "max_positions",
                f"{portfolio.open_positions} open positions, maximum is {cfg.max_positions}",
            )

        if proposal.position_size_pct > cfg.max_position_size_pct:
            return ValidationResult.block(
                "position_size",
                f"Position size {proposal.position_size_pct:.2%} exceeds {cfg.max_position_size_pct:.2%}",
            )

        if portfolio.total_value <= 0:
            return ValidationResult.block("portfolio_value", "Portfolio value unavailable")

        if proposal.sector:
            held = portfolio.sector_exposure.get(proposal.sector, 0)
            if held >= cfg.max_sector_positions:
                return ValidationResult.block(
                    "sector_positions",
                    f"{proposal.sector} already holds {held} positions, maximum is {cfg.max_sector_positions}",
                )

            current = portfolio.sector_exposure_value.get(proposal.sector, 0.0)
            resulting = current + proposal.value / portfolio.total_value
            if resulting > cfg.max_sector_value_pct:
                return ValidationResult.block(
                    "sector_exposure",
                    f"{proposal.sector} exposure would be {resulting:.2%}, maximum is {cfg.max_sector_value_pct:.2%}",
                )

        correlation = self.check_correlation(proposal.symbol, portfolio.held_symbols)
        if not correlation.allowed:
            return correlation

        if not cfg.min_stop_loss_pct <= proposal.stop_loss_pct <= cfg.max_stop_loss_pct:
            return ValidationResult.block(
                "stop_loss",
                f"Stop loss {proposal.stop_loss_pct:.2%} outside "
                f"[{cfg.min_stop_loss_pct:.2%}, {cfg.max_stop_loss_pct:.2%}]",
            )

        dollar_risk = proposal.value * proposal.stop_loss_pct
        max_risk = portfolio.total_value * cfg.max_risk_per_trade_pct
        if dollar_risk > max_risk:
            return ValidationResult.block(
                "risk_per_trade",
                f"Dollar risk {dollar_risk:.2f} exceeds {max_risk:.2f}",
            )

        if proposal.value > portfolio.cash:
            return ValidationResult.block(
                "cash",
                f"Position value {proposal.value:.2f} exceeds available cash {portfolio.cash:.2f}",
            )

        return ValidationResult.ok()

    def check_correlation(self, symbol: str, holdings: List[str]) -> ValidationResult:
        """Block a buy highly correlated with an existing holding."""
        if self._correlation is None or not holdings:
            return ValidationResult.ok()
        highest = self._correlation.highest_correlation(symbol, holdings)
        if highest is not None and abs(highest.correlation) > self._config.max_correlation:
            return ValidationResult.block(
                "correlation",
                f"Correlation {highest.correlation:.2f} with {highest.other} "
                f"exceeds {self._config.max_correlation:.2f}",
            )
        return ValidationResult.ok()

    # --------------------------------------------------------
    # THROTTLES
    # --------------------------------------------------------

    def get_losing_streak_multiplier(self) -> float:
        """
        Size multiplier from consecutive losing closed trades.

        factor ** (losses // threshold) once losses >= threshold,
        otherwise 1.0. Any win resets the streak.
        """
        threshold = self._config.streak_reduction_threshold
        factor = self._config.streak_reduction_factor
        if threshold <= 0 or not 0 < factor < 1:
            return 1.0

        try:
            recent = self._trades.get_closed_trades(limit=STREAK_LOOKBACK)
        except (SQLAlchemyError, RepositoryException) as e:
            logger.warning(f"Could not load closed trades for streak check: {e}")
            return 1.0

        losses = 0
        for trade in recent:
            if not trade.is_loss:
                break
            losses += 1

        if losses < threshold:
            return 1.0
        multiplier = factor ** (losses // threshold)
        logger.info(f"Losing streak of {losses}: size multiplier {multiplier:.3f}")
        return multiplier

    def check_daily_loss(self, portfolio: PortfolioState) -> bool:
        """True when today's P&L is below the negative daily limit."""
        return portfolio.today_pnl_pct < -self._config.daily_loss_limit_pct

    def check_drawdown(self, portfolio: PortfolioState) -> DrawdownReport:
        peak = portfolio.peak_value
        drawdown = (peak - portfolio.total_value) / peak if peak > 0 else 0.0
        threshold = self._config.max_drawdown_alert_pct
        report = DrawdownReport(
            drawdown_pct=drawdown,
            peak_value=peak,
            current_value=portfolio.total_value,
            threshold=threshold,
            breached=peak > 0 and drawdown > threshold,
        )
        if report.breached:
            logger.warning(
                f"Drawdown {drawdown:.2%} from peak {peak:.2f} exceeds alert threshold {threshold:.2%}"
            )
        return report
