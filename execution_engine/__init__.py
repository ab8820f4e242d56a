"""
Execution Engine Package.

============================================================
PURPOSE
============================================================
Turns approved trading decisions into broker orders and keeps
Order, Trade and Position records in step with the fills.

COMPONENTS:
- OrderManager: the single broker chokepoint
- ExecutionStrategy: SimulatedExecution / BrokerExecution
- OrderStateMachine: order status transitions
- OrderReplacer: stale limit order replacement
- adapters: BrokerAdapter implementations

============================================================
"""

from .config import ExecutionConfig, OrderReplacerConfig
from .errors import ERROR_CODES, ErrorCategory, ErrorSeverity, get_error_info, is_retryable
from .order_manager import OrderManager, resolve_exit_order_tag
from .order_replacer import OrderReplacer, ReplaceOrderResult, ReplaceResult
from .state_machine import OrderStateMachine, StateTransitionEvent, TransitionGuard
from .strategies import BrokerExecution, ExecutionStrategy, SimulatedExecution
from .types import (
    BuyRequest,
    CloseRequest,
    ExecutionResult,
    ExecutionResultCode,
    FillReport,
)


__all__ = [
    "ExecutionConfig",
    "OrderReplacerConfig",
    "ERROR_CODES",
    "ErrorCategory",
    "ErrorSeverity",
    "get_error_info",
    "is_retryable",
    "OrderManager",
    "resolve_exit_order_tag",
    "OrderReplacer",
    "ReplaceOrderResult",
    "ReplaceResult",
    "OrderStateMachine",
    "StateTransitionEvent",
    "TransitionGuard",
    "BrokerExecution",
    "ExecutionStrategy",
    "SimulatedExecution",
    "BuyRequest",
    "CloseRequest",
    "ExecutionResult",
    "ExecutionResultCode",
    "FillReport",
]
