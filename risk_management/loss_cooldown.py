"""
Risk Management - Loss Cool-down.

============================================================
PURPOSE
============================================================
Timed reduced-sizing mode entered when today's loss breaches
the daily limit.

ESCALATION:
1. First breach        -> ENTERED_COOLDOWN, trading continues
                          at reduced size
2. Breach while active -> CONTINUE_REDUCED
3. Loss >= hard limit  -> HARD_BREACH: the caller closes all
   while active           positions and pauses; the cool-down
                          is cleared and never re-entered for
                          the same breach
The cool-down clears itself once its timer passes.

============================================================
"""

import logging
import math
from datetime import date, datetime, timedelta
from typing import Optional

from core.clock import ClockProtocol, SystemClock
from monitoring.audit import AuditLogger
from storage.models.enums import AuditSeverity
from risk_management.config import CooldownConfig
from risk_management.types import CooldownAction, PortfolioState


logger = logging.getLogger(__name__)


class LossCooldown:
    """Tracks the daily-loss cool-down timer."""

    def __init__(
        self,
        daily_loss_limit_pct: float,
        clock: Optional[ClockProtocol] = None,
        config: Optional[CooldownConfig] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self._limit = daily_loss_limit_pct
        self._clock = clock or SystemClock()
        self._config = config or CooldownConfig()
        self._config.validate()
        self._audit = audit
        self._until: Optional[datetime] = None
        self._hard_breach_day: Optional[date] = None

    @property
    def cooldown_until(self) -> Optional[datetime]:
        return self._until

    def is_active(self) -> bool:
        if self._until is None:
            return False
        if self._clock.now() >= self._until:
            logger.info("Loss cool-down expired, restoring normal sizing")
            self._until = None
            return False
        return True

    def clear(self) -> None:
        self._until = None
        self._hard_breach_day = None

    def evaluate(self, portfolio: PortfolioState) -> CooldownAction:
        loss = -portfolio.today_pnl_pct
        if loss <= self._limit:
            self.is_active()
            return CooldownAction.NONE

        # a hard breach ends the day's escalation
        if self._hard_breach_day == self._clock.today():
            return CooldownAction.NONE

        if not self.is_active():
            self._until = self._clock.now() + timedelta(minutes=self._config.duration_minutes)
            message = (
                f"Daily loss {portfolio.today_pnl_pct:.2%} breached -{self._limit:.2%}, "
                f"reduced sizing until {self._until.isoformat()}"
            )
            logger.warning(message)
            if self._audit is not None:
                self._audit.log_risk(
                    message,
                    details={
                        "today_pnl_pct": portfolio.today_pnl_pct,
                        "cooldown_until": self._until,
                        "size_factor": self._config.size_factor,
                    },
                )
            return CooldownAction.ENTERED_COOLDOWN

        hard_limit = self._limit * self._config.hard_limit_multiplier
        if abs(portfolio.today_pnl_pct) >= hard_limit:
            self._until = None
            self._hard_breach_day = self._clock.today()
            message = (
                f"Daily loss {portfolio.today_pnl_pct:.2%} reached hard limit "
                f"-{hard_limit:.2%} during cool-down"
            )
            logger.critical(message)
            if self._audit is not None:
                self._audit.log_risk(
                    message,
                    details={"today_pnl_pct": portfolio.today_pnl_pct, "hard_limit": hard_limit},
                    severity=AuditSeverity.CRITICAL,
                )
            return CooldownAction.HARD_BREACH

        return CooldownAction.CONTINUE_REDUCED

    def size_factor(self) -> float:
        return self._config.size_factor if self.is_active() else 1.0

    def apply_size_reductions(self, shares: float, streak_multiplier: float = 1.0) -> int:
        """Stack the streak and cool-down multipliers on ``shares``; floored, at least 1."""
        reduced = math.floor(shares * streak_multiplier * self.size_factor())
        return max(1, reduced)
