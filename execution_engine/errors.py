"""
Execution Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Classification of execution outcomes and broker error codes.

ERROR CATEGORIES:
1. Validation Errors - request can never succeed as given
2. Exchange Errors - broker rejected or cancelled
3. Network Errors - broker unreachable
4. Timeout Errors - no terminal state in time
5. Blocked Errors - blocked by position state

RETRYABLE vs NON-RETRYABLE:
- Retryable: transient, a later cycle may succeed
- Non-retryable: the same request will fail again

The Order Manager never retries on its own; retryability only
guides audit severity and the caller's next cycle.

============================================================
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Set

from execution_engine.types import ExecutionResultCode


class ErrorCategory(Enum):
    """Error category classification."""

    VALIDATION = "VALIDATION"
    EXCHANGE = "EXCHANGE"
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    BLOCKED = "BLOCKED"
    INTERNAL = "INTERNAL"


class ErrorSeverity(Enum):
    """Error severity levels."""

    WARNING = "WARNING"
    """Non-critical, informational."""

    ERROR = "ERROR"
    """Standard error, needs attention."""

    CRITICAL = "CRITICAL"
    """Critical error, may need manual intervention."""


@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    """Error code."""

    category: ErrorCategory
    """Error category."""

    severity: ErrorSeverity
    """Error severity."""

    is_retryable: bool
    """Whether a later attempt may succeed."""

    description: str
    """Human-readable description."""

    recommended_action: str
    """Recommended action to take."""


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    # ========== RESULT CODES ==========
    ExecutionResultCode.REJECTED.value: ErrorCodeInfo(
        code=ExecutionResultCode.REJECTED.value,
        category=ErrorCategory.EXCHANGE,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Broker rejected or cancelled the order",
        recommended_action="Inspect broker message; do not resubmit unchanged",
    ),
    ExecutionResultCode.PARTIAL_FILL.value: ErrorCodeInfo(
        code=ExecutionResultCode.PARTIAL_FILL.value,
        category=ErrorCategory.EXCHANGE,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Order partially filled; local position state not updated",
        recommended_action="Reconcile with broker holdings",
    ),
    ExecutionResultCode.TIMEOUT.value: ErrorCodeInfo(
        code=ExecutionResultCode.TIMEOUT.value,
        category=ErrorCategory.TIMEOUT,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        description="Order did not reach a terminal state within the timeout",
        recommended_action="Order was cancelled; retry next cycle",
    ),
    ExecutionResultCode.BROKER_ERROR.value: ErrorCodeInfo(
        code=ExecutionResultCode.BROKER_ERROR.value,
        category=ErrorCategory.NETWORK,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        description="Broker unreachable or returned an error",
        recommended_action="Retry next cycle; check broker connectivity",
    ),
    ExecutionResultCode.DUPLICATE_POSITION.value: ErrorCodeInfo(
        code=ExecutionResultCode.DUPLICATE_POSITION.value,
        category=ErrorCategory.BLOCKED,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="A position already exists for the symbol",
        recommended_action="Skip; one live position per symbol",
    ),
    ExecutionResultCode.NO_POSITION.value: ErrorCodeInfo(
        code=ExecutionResultCode.NO_POSITION.value,
        category=ErrorCategory.BLOCKED,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="No position to close or reduce",
        recommended_action="Skip",
    ),
    ExecutionResultCode.INVALID_REQUEST.value: ErrorCodeInfo(
        code=ExecutionResultCode.INVALID_REQUEST.value,
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Request failed basic validation",
        recommended_action="Fix the caller",
    ),

    # ========== BROKER CODES ==========
    "BRK_INSUFFICIENT_FUNDS": ErrorCodeInfo(
        code="BRK_INSUFFICIENT_FUNDS",
        category=ErrorCategory.EXCHANGE,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Insufficient cash for the order",
        recommended_action="Refresh portfolio state",
    ),
    "BRK_MARKET_CLOSED": ErrorCodeInfo(
        code="BRK_MARKET_CLOSED",
        category=ErrorCategory.EXCHANGE,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Market closed for the instrument",
        recommended_action="Retry when the market opens",
    ),
    "BRK_RATE_LIMITED": ErrorCodeInfo(
        code="BRK_RATE_LIMITED",
        category=ErrorCategory.NETWORK,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Broker rate limit exceeded",
        recommended_action="Back off",
    ),
    "BRK_ORDER_NOT_FOUND": ErrorCodeInfo(
        code="BRK_ORDER_NOT_FOUND",
        category=ErrorCategory.EXCHANGE,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Order unknown to the broker",
        recommended_action="Reconcile local order state",
    ),
    "BRK_AUTH_FAILED": ErrorCodeInfo(
        code="BRK_AUTH_FAILED",
        category=ErrorCategory.NETWORK,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Broker rejected the credentials",
        recommended_action="Check BROKER_API_KEY",
    ),
}


HTTP_STATUS_MAPPING: Dict[int, str] = {
    401: "BRK_AUTH_FAILED",
    403: "BRK_AUTH_FAILED",
    404: "BRK_ORDER_NOT_FOUND",
    429: "BRK_RATE_LIMITED",
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """Error info for ``code``, or a generic internal error."""
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description=f"Unknown error: {code}",
        recommended_action="Investigate error",
    ))


def map_http_status(status: int) -> str:
    return HTTP_STATUS_MAPPING.get(status, "BRK_UNKNOWN_ERROR")


def is_retryable(code: str) -> bool:
    return get_error_info(code).is_retryable


RETRYABLE_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_retryable
}

CRITICAL_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.severity == ErrorSeverity.CRITICAL
}
