"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the custom exceptions raised by the trading engine.

- Provides a clear exception hierarchy
- Carries severity for audit and alerting
- Includes context for debugging

Validation failures and risk blocks are NOT exceptions in this
engine: they are returned as None/False/result values. Exceptions
are reserved for programming errors, misconfiguration and
infrastructure failures.

============================================================
EXCEPTION HIERARCHY
============================================================
TradingException (base)
├── ConfigurationError
│   └── InvalidConfigError
├── DataError
│   └── DataStalenessError
├── ExecutionError
│   ├── BrokerError
│   └── OrderError
└── StateTransitionError

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for alerting."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, may impact operations."""

    CRITICAL = "critical"
    """Critical issue, requires immediate action."""


# ============================================================
# ERROR CLASSIFICATION
# ============================================================

class ErrorClassification(Enum):
    """Classification of error recoverability."""

    RECOVERABLE = "recoverable"
    """Error can be recovered from automatically."""

    TRANSIENT = "transient"
    """Temporary error, retry may succeed."""

    NON_RECOVERABLE = "non_recoverable"
    """Permanent error, requires intervention."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class TradingException(Exception):
    """
    Base exception for all trading engine errors.

    All exceptions carry:
    - severity: for alerting
    - context: for debugging
    - classification: for retry decisions
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_classification: ErrorClassification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.classification = classification or self.default_classification
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_recoverable(self) -> bool:
        """Check if error is recoverable."""
        return self.classification in (
            ErrorClassification.RECOVERABLE,
            ErrorClassification.TRANSIENT,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(TradingException):
    """Error in configuration."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(
            message=f"Invalid configuration for {key}: {reason}",
            context={
                "config_key": key,
                "actual_value": str(value)[:100],
                "reason": reason,
            },
        )
        self.key = key
        self.value = value
        self.reason = reason


# ============================================================
# DATA ERRORS
# ============================================================

class DataError(TradingException):
    """Base class for data-related errors."""

    default_classification = ErrorClassification.TRANSIENT


class DataStalenessError(DataError):
    """Data is too old to act on."""

    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        data_type: Optional[str] = None,
        age_seconds: Optional[float] = None,
        max_age_seconds: Optional[float] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if data_type:
            context["data_type"] = data_type
        if age_seconds is not None:
            context["age_seconds"] = age_seconds
        if max_age_seconds is not None:
            context["max_age_seconds"] = max_age_seconds

        super().__init__(message, context=context, **kwargs)


# ============================================================
# EXECUTION ERRORS
# ============================================================

class ExecutionError(TradingException):
    """Base class for execution-related errors."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.TRANSIENT


class BrokerError(ExecutionError):
    """Broker API error."""

    def __init__(
        self,
        message: str,
        broker: Optional[str] = None,
        error_code: Optional[str] = None,
        endpoint: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if broker:
            context["broker"] = broker
        if error_code:
            context["error_code"] = error_code
        if endpoint:
            context["endpoint"] = endpoint

        super().__init__(message, context=context, **kwargs)
        self.error_code = error_code


class OrderError(ExecutionError):
    """Misuse of an order API, e.g. an instruction that can never be valid."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.NON_RECOVERABLE


# ============================================================
# STATE ERRORS
# ============================================================

class StateTransitionError(TradingException):
    """Invalid state transition."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        reason: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if from_state:
            context["from_state"] = from_state
        if to_state:
            context["to_state"] = to_state
        if reason:
            context["reason"] = reason

        super().__init__(message, context=context, **kwargs)
