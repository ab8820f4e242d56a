"""
Core Module Package.

This package contains the infrastructure components that every
other package of the engine depends on.

Components:
- clock: Injectable UTC clock
- exceptions: Custom exception hierarchy
"""

from .clock import ClockProtocol, SystemClock, MockClock, ensure_utc
from .exceptions import (
    TradingException,
    Severity,
    ErrorClassification,
    ConfigurationError,
    InvalidConfigError,
    DataError,
    DataStalenessError,
    ExecutionError,
    BrokerError,
    OrderError,
    StateTransitionError,
)


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "ensure_utc",
    "TradingException",
    "Severity",
    "ErrorClassification",
    "ConfigurationError",
    "InvalidConfigError",
    "DataError",
    "DataStalenessError",
    "ExecutionError",
    "BrokerError",
    "OrderError",
    "StateTransitionError",
]
