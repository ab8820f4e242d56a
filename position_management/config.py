"""
Position Management - Configuration.

============================================================
PURPOSE
============================================================
Exit monitoring, trailing stops, DCA and tiered partial exits.

DCA and partial exits are disabled by default; enabling them
changes how much capital a single symbol can hold.

============================================================
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from core.exceptions import InvalidConfigError


DEFAULT_ROI_TABLE: Dict[int, float] = {0: 0.06, 60: 0.04, 240: 0.02}


@dataclass
class TrailingStopConfig:
    """Upward-only trailing stop."""

    enabled: bool = True

    activation_pct: float = 0.0
    """Trail only once pnl % exceeds this."""

    trail_pct: Optional[float] = None
    """Trail distance; None uses the original stop distance."""

    def validate(self) -> None:
        if self.activation_pct < 0:
            raise InvalidConfigError("activation_pct", self.activation_pct, "must not be negative")
        if self.trail_pct is not None and not 0 < self.trail_pct < 1:
            raise InvalidConfigError("trail_pct", self.trail_pct, "must be in (0, 1)")


@dataclass
class ExitConfig:
    """Exit condition monitoring."""

    roi_enabled: bool = True
    roi_table: Dict[int, float] = field(default_factory=lambda: dict(DEFAULT_ROI_TABLE))
    """Minimum position age in minutes -> required return."""

    model_exits_enabled: bool = True
    """Honor model exit flag, max hold days and price target."""

    quantity_tolerance: float = 0.001
    """Broker/DB share differences below this are ignored on sync."""

    trailing: TrailingStopConfig = field(default_factory=TrailingStopConfig)

    def validate(self) -> None:
        for minutes, threshold in self.roi_table.items():
            if int(minutes) < 0:
                raise InvalidConfigError("roi_table", minutes, "ages must not be negative")
            if threshold < -1:
                raise InvalidConfigError("roi_table", threshold, "thresholds must be above -1")
        self.trailing.validate()


@dataclass
class DCAConfig:
    """Dollar-cost averaging into losing positions."""

    enabled: bool = False
    max_rounds: int = 3

    drop_pct_per_round: float = 0.05
    """Round n needs a drop of n times this below the original entry."""

    size_multiplier: float = 1.0
    """Round n buys original shares times multiplier ** (n - 1)."""

    min_time_between_minutes: float = 60.0

    def validate(self) -> None:
        if self.max_rounds < 0:
            raise InvalidConfigError("max_rounds", self.max_rounds, "must not be negative")
        if not 0 < self.drop_pct_per_round < 1:
            raise InvalidConfigError("drop_pct_per_round", self.drop_pct_per_round, "must be in (0, 1)")
        if self.size_multiplier <= 0:
            raise InvalidConfigError("size_multiplier", self.size_multiplier, "must be positive")
        if self.min_time_between_minutes < 0:
            raise InvalidConfigError("min_time_between_minutes", self.min_time_between_minutes, "must not be negative")


@dataclass
class PartialExitTier:
    pct_gain: float
    sell_pct: float


def _default_tiers() -> List[PartialExitTier]:
    return [PartialExitTier(0.05, 0.33), PartialExitTier(0.10, 0.5)]


@dataclass
class PartialExitConfig:
    """Tiered profit taking. Tiers are consumed in order."""

    enabled: bool = False
    tiers: List[PartialExitTier] = field(default_factory=_default_tiers)

    def validate(self) -> None:
        previous = 0.0
        for tier in self.tiers:
            if tier.pct_gain <= previous:
                raise InvalidConfigError("tiers", tier.pct_gain, "gains must be positive and increasing")
            if not 0 < tier.sell_pct < 1:
                raise InvalidConfigError("tiers", tier.sell_pct, "sell_pct must be in (0, 1)")
            previous = tier.pct_gain
