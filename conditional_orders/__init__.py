"""
Conditional Orders Package.

Price, time and indicator triggered orders with OCO grouping.
Disabled by default; enable through ConditionalOrderConfig.
"""

from conditional_orders.types import (
    INDICATOR_OPERATORS,
    ConditionalOrderConfig,
    ConditionalOrderRequest,
    ConditionalOrderStatusReport,
    OrderAction,
    TriggeredAction,
)
from conditional_orders.engine import ConditionalOrderEngine, ConditionalOrderError


__all__ = [
    "INDICATOR_OPERATORS",
    "ConditionalOrderConfig",
    "ConditionalOrderRequest",
    "ConditionalOrderStatusReport",
    "OrderAction",
    "TriggeredAction",
    "ConditionalOrderEngine",
    "ConditionalOrderError",
]
