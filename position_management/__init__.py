"""
Position Management Package.

============================================================
PURPOSE
============================================================
Everything that happens to a position between entry and exit:

- tracker: mark-to-market, trailing stops, exit conditions,
  broker reconciliation
- roi_table: age-indexed return exits
- dca: adding to losing positions in rounds
- partial_exit: tiered profit taking

============================================================
"""

# tracker first: the execution engine imports QuoteProvider from it
from .config import (
    DCAConfig,
    ExitConfig,
    PartialExitConfig,
    PartialExitTier,
    TrailingStopConfig,
)
from .roi_table import get_roi_threshold, parse_roi_table, should_exit_by_roi
from .tracker import ExitCheckResult, PositionTracker, QuoteProvider, SyncResult
from .dca import DCAEvaluation, DCAManager
from .partial_exit import PartialExitEvaluation, PartialExitManager


__all__ = [
    "DCAConfig",
    "ExitConfig",
    "PartialExitConfig",
    "PartialExitTier",
    "TrailingStopConfig",
    "get_roi_threshold",
    "parse_roi_table",
    "should_exit_by_roi",
    "ExitCheckResult",
    "PositionTracker",
    "QuoteProvider",
    "SyncResult",
    "DCAEvaluation",
    "DCAManager",
    "PartialExitEvaluation",
    "PartialExitManager",
]
