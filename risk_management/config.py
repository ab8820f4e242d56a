"""
Risk Management - Configuration.

============================================================
PURPOSE
============================================================
Limits for the risk gate, the loss cool-down and the
protection ledger.

All limits are fractions of portfolio value (0.05 = 5%), so
the same logic holds at any capital level.

============================================================
"""

from dataclasses import dataclass, field

from core.exceptions import InvalidConfigError


def _require_fraction(key: str, value: float, allow_zero: bool = False) -> None:
    low_ok = value >= 0 if allow_zero else value > 0
    if not (low_ok and value <= 1):
        raise InvalidConfigError(key, value, "must be a fraction in (0, 1]")


# ============================================================
# RISK GATE
# ============================================================

@dataclass
class RiskConfig:
    """Risk gate and throttle limits."""

    max_positions: int = 5
    """Maximum concurrent open positions."""

    max_position_size_pct: float = 0.15
    """Maximum single position as a fraction of portfolio value."""

    min_stop_loss_pct: float = 0.01
    max_stop_loss_pct: float = 0.10
    """Accepted stop-loss distance range."""

    max_risk_per_trade_pct: float = 0.02
    """Maximum dollar risk (value x stop %) as a fraction of portfolio value."""

    max_sector_positions: int = 3
    """Maximum open positions in one sector."""

    max_sector_value_pct: float = 0.35
    """Maximum sector exposure after the trade, as a fraction of portfolio value."""

    max_correlation: float = 0.85
    """Maximum correlation with any existing holding."""

    correlation_lookback_days: int = 30

    daily_loss_limit_pct: float = 0.05
    """Today's P&L below minus this enters the loss cool-down."""

    max_drawdown_alert_pct: float = 0.10
    """Drawdown from the rolling peak that is reported."""

    streak_reduction_threshold: int = 3
    """Consecutive losses per size reduction step."""

    streak_reduction_factor: float = 0.5
    """Size multiplier applied per step."""

    def validate(self) -> None:
        if self.max_positions < 1:
            raise InvalidConfigError("max_positions", self.max_positions, "must be at least 1")
        _require_fraction("max_position_size_pct", self.max_position_size_pct)
        _require_fraction("min_stop_loss_pct", self.min_stop_loss_pct)
        _require_fraction("max_stop_loss_pct", self.max_stop_loss_pct)
        if self.min_stop_loss_pct > self.max_stop_loss_pct:
            raise InvalidConfigError(
                "min_stop_loss_pct", self.min_stop_loss_pct, "must not exceed max_stop_loss_pct"
            )
        _require_fraction("max_risk_per_trade_pct", self.max_risk_per_trade_pct)
        if self.max_sector_positions < 1:
            raise InvalidConfigError("max_sector_positions", self.max_sector_positions, "must be at least 1")
        _require_fraction("max_sector_value_pct", self.max_sector_value_pct)
        _require_fraction("max_correlation", self.max_correlation)
        if self.correlation_lookback_days < 2:
            raise InvalidConfigError("correlation_lookback_days", self.correlation_lookback_days, "must be at least 2")
        _require_fraction("daily_loss_limit_pct", self.daily_loss_limit_pct)
        _require_fraction("max_drawdown_alert_pct", self.max_drawdown_alert_pct)


# ============================================================
# LOSS COOL-DOWN
# ============================================================

@dataclass
class CooldownConfig:
    """Timed reduced-sizing mode after a daily loss breach."""

    duration_minutes: float = 60.0
    """How long the cool-down lasts."""

    size_factor: float = 0.5
    """Position size multiplier while cooling down."""

    hard_limit_multiplier: float = 2.0
    """Loss of this many daily limits while cooling down is a hard breach."""

    def validate(self) -> None:
        if self.duration_minutes <= 0:
            raise InvalidConfigError("duration_minutes", self.duration_minutes, "must be positive")
        _require_fraction("size_factor", self.size_factor)
        if self.hard_limit_multiplier <= 1:
            raise InvalidConfigError("hard_limit_multiplier", self.hard_limit_multiplier, "must be above 1")


# ============================================================
# PROTECTIONS
# ============================================================

@dataclass
class StoplossGuardConfig:
    """Lock after N stop-loss exits within a rolling window."""

    enabled: bool = True
    trade_limit: int = 3
    lookback_minutes: int = 1440
    lock_minutes: int = 360

    only_per_pair: bool = False
    """Count and lock per pair instead of globally."""


@dataclass
class MaxDrawdownLockConfig:
    """Global lock when closed-trade drawdown in the window reaches a threshold."""

    enabled: bool = True
    max_drawdown_pct: float = 0.15
    lookback_minutes: int = 10080
    lock_minutes: int = 1440


@dataclass
class LowProfitConfig:
    """Pair lock when a pair's average return in the window is too low."""

    enabled: bool = True
    min_profit: float = -0.05
    """Average return per closed trade below which the pair locks."""

    trade_limit: int = 2
    """Minimum closed trades in the window before the guard applies."""

    lookback_minutes: int = 10080
    lock_minutes: int = 1440


@dataclass
class ProtectionConfig:
    """Protection ledger configuration."""

    cooldown_minutes: int = 30
    """Pair lock after every close; 0 disables."""

    stoploss_guard: StoplossGuardConfig = field(default_factory=StoplossGuardConfig)
    max_drawdown_lock: MaxDrawdownLockConfig = field(default_factory=MaxDrawdownLockConfig)
    low_profit: LowProfitConfig = field(default_factory=LowProfitConfig)

    def validate(self) -> None:
        if self.cooldown_minutes < 0:
            raise InvalidConfigError("cooldown_minutes", self.cooldown_minutes, "must not be negative")
        for name, guard in (
            ("stoploss_guard", self.stoploss_guard),
            ("max_drawdown_lock", self.max_drawdown_lock),
            ("low_profit", self.low_profit),
        ):
            if guard.lookback_minutes <= 0 or guard.lock_minutes <= 0:
                raise InvalidConfigError(f"{name}.lookback_minutes", guard.lookback_minutes, "windows must be positive")
        if self.stoploss_guard.trade_limit < 1:
            raise InvalidConfigError("stoploss_guard.trade_limit", self.stoploss_guard.trade_limit, "must be at least 1")
        if self.low_profit.trade_limit < 1:
            raise InvalidConfigError("low_profit.trade_limit", self.low_profit.trade_limit, "must be at least 1")
        _require_fraction("max_drawdown_lock.max_drawdown_pct", self.max_drawdown_lock.max_drawdown_pct)
