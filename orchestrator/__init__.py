"""
Orchestrator Package.

============================================================
PURPOSE
============================================================
The trading engine and its command-line surface.

- config: EngineConfig aggregating every package configuration
- core: TradingEngine jobs, portfolio state and control surface
- cli: argparse commands

============================================================
"""

from .config import EngineConfig
from .core import (
    EmergencyStopResult,
    MaintenanceResult,
    PositionCycleResult,
    RiskCheckResult,
    TradingEngine,
    setup_logging,
)


__all__ = [
    "EngineConfig",
    "EmergencyStopResult",
    "MaintenanceResult",
    "PositionCycleResult",
    "RiskCheckResult",
    "TradingEngine",
    "setup_logging",
]
