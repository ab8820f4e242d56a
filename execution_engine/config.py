"""
Execution Engine - Configuration.

============================================================
PURPOSE
============================================================
Configuration for order execution and stale-order replacement.

CRITICAL CONSTRAINTS:
- Every broker interaction is bounded by a timeout
- No blind retries: a failed attempt is reported, not repeated
- Deterministic behavior

============================================================
"""

from dataclasses import dataclass

from core.exceptions import InvalidConfigError


@dataclass
class ExecutionConfig:
    """Order Manager configuration."""

    dry_run: bool = True
    """Simulate fills instead of submitting to the broker."""

    order_timeout_seconds: float = 10.0
    """Maximum wait for an order to reach a terminal state."""

    poll_interval_seconds: float = 0.5
    """Interval between order status polls."""

    place_protective_orders: bool = True
    """Place broker stop-loss / take-profit orders after an entry fill."""

    protective_order_delay_seconds: float = 0.0
    """Delay between an entry fill and placing protective orders."""

    def validate(self) -> None:
        if self.order_timeout_seconds <= 0:
            raise InvalidConfigError("order_timeout_seconds", self.order_timeout_seconds, "must be positive")
        if self.poll_interval_seconds <= 0:
            raise InvalidConfigError("poll_interval_seconds", self.poll_interval_seconds, "must be positive")
        if self.protective_order_delay_seconds < 0:
            raise InvalidConfigError(
                "protective_order_delay_seconds",
                self.protective_order_delay_seconds,
                "must not be negative",
            )


@dataclass
class OrderReplacerConfig:
    """
    Replacement of stale open limit orders.

    SAFETY: protective (stoploss / take_profit) and market orders
    are never replaced.
    """

    enabled: bool = False
    """Whether stale limit orders are replaced."""

    replace_after_seconds: float = 300.0
    """Minimum order age before it may be replaced."""

    price_deviation_pct: float = 0.01
    """Replace only when market deviates from the limit by more than this."""

    max_replacements: int = 3
    """Maximum replacements per chain."""

    def validate(self) -> None:
        if self.replace_after_seconds < 0:
            raise InvalidConfigError("replace_after_seconds", self.replace_after_seconds, "must not be negative")
        if not 0 < self.price_deviation_pct < 1:
            raise InvalidConfigError("price_deviation_pct", self.price_deviation_pct, "must be in (0, 1)")
        if self.max_replacements < 0:
            raise InvalidConfigError("max_replacements", self.max_replacements, "must not be negative")
