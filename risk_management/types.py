"""
Risk Management - Types.

============================================================
PURPOSE
============================================================
Value types shared by the risk gate, the cool-down tracker
and the engine orchestration.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from storage.models.enums import TradeSide


# ============================================================
# PORTFOLIO STATE
# ============================================================

@dataclass
class PortfolioState:
    """
    Derived portfolio figures, never persisted.

    sector_exposure counts open positions per sector;
    sector_exposure_value is each sector's share of total value.
    """

    cash: float
    total_value: float
    open_positions: int = 0

    today_pnl: float = 0.0
    """Realized plus unrealized P&L since start of day."""

    today_pnl_pct: float = 0.0

    sector_exposure: Dict[str, int] = field(default_factory=dict)
    sector_exposure_value: Dict[str, float] = field(default_factory=dict)

    peak_value: float = 0.0
    """Rolling peak from portfolio snapshots."""

    held_symbols: List[str] = field(default_factory=list)
    fetched_at: Optional[datetime] = None

    is_stale: bool = False
    """Figures came from an expired cache; do not size trades on them."""

    @property
    def drawdown_pct(self) -> float:
        if self.peak_value <= 0:
            return 0.0
        return max(0.0, (self.peak_value - self.total_value) / self.peak_value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cash": self.cash,
            "total_value": self.total_value,
            "open_positions": self.open_positions,
            "today_pnl": self.today_pnl,
            "today_pnl_pct": self.today_pnl_pct,
            "sector_exposure": dict(self.sector_exposure),
            "sector_exposure_value": dict(self.sector_exposure_value),
            "peak_value": self.peak_value,
            "held_symbols": list(self.held_symbols),
            "fetched_at": self.fetched_at.isoformat() if self.fetched_at else None,
            "is_stale": self.is_stale,
        }


# ============================================================
# TRADE PROPOSAL / VALIDATION
# ============================================================

@dataclass
class TradeProposal:
    """A trade to be checked by the risk gate."""

    symbol: str
    side: TradeSide
    shares: float
    price: float
    stop_loss_pct: float
    position_size_pct: float
    sector: Optional[str] = None

    @property
    def value(self) -> float:
        return self.shares * self.price


@dataclass
class ValidationResult:
    """Outcome of the risk gate. ``check`` names the failing gate."""

    allowed: bool
    reason: Optional[str] = None
    check: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(allowed=True)

    @classmethod
    def block(cls, check: str, reason: str) -> "ValidationResult":
        return cls(allowed=False, reason=reason, check=check)


@dataclass
class DrawdownReport:
    """Drawdown against the rolling peak. Reported, never blocking."""

    drawdown_pct: float
    peak_value: float
    current_value: float
    threshold: float
    breached: bool


# ============================================================
# COOL-DOWN
# ============================================================

class CooldownAction(Enum):
    """What the loss cool-down decided for this risk check."""

    NONE = "NONE"
    """No breach."""

    ENTERED_COOLDOWN = "ENTERED_COOLDOWN"
    """First breach: reduced sizing, trading continues."""

    CONTINUE_REDUCED = "CONTINUE_REDUCED"
    """Still breached while cooling down, below the hard limit."""

    HARD_BREACH = "HARD_BREACH"
    """Hard limit reached while cooling down: close all and pause."""


# ============================================================
# CORRELATION
# ============================================================

@dataclass
class CorrelationResult:
    """Correlation of a candidate with one holding."""

    symbol: str
    other: str
    correlation: float
    data_points: int
