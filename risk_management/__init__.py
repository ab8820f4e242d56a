"""
Risk Management Package.

============================================================
PURPOSE
============================================================
Everything that can veto or shrink a trade:

- risk_guard: ordered pre-trade gate, losing-streak multiplier,
  daily loss and drawdown checks
- loss_cooldown: timed reduced-sizing mode after a loss breach
- correlation: return correlation against holdings
- pair_locks: time-bounded entry blocks
- protections: locks derived from recent trade outcomes

============================================================
"""

from .config import (
    CooldownConfig,
    LowProfitConfig,
    MaxDrawdownLockConfig,
    ProtectionConfig,
    RiskConfig,
    StoplossGuardConfig,
)
from .correlation import CorrelationAnalyzer, PriceHistoryProvider
from .loss_cooldown import LossCooldown
from .pair_locks import PairLockManager
from .protections import ProtectionLedger
from .risk_guard import RiskGuard
from .types import (
    CooldownAction,
    CorrelationResult,
    DrawdownReport,
    PortfolioState,
    TradeProposal,
    ValidationResult,
)


__all__ = [
    "CooldownConfig",
    "LowProfitConfig",
    "MaxDrawdownLockConfig",
    "ProtectionConfig",
    "RiskConfig",
    "StoplossGuardConfig",
    "CorrelationAnalyzer",
    "PriceHistoryProvider",
    "LossCooldown",
    "PairLockManager",
    "ProtectionLedger",
    "RiskGuard",
    "CooldownAction",
    "CorrelationResult",
    "DrawdownReport",
    "PortfolioState",
    "TradeProposal",
    "ValidationResult",
]
