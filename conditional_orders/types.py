"""
Conditional Orders - Types and Configuration.

============================================================
PURPOSE
============================================================
Value types for conditional orders: what fires them, what they
do when they fire, and the engine configuration.

TRIGGER CONDITIONS (stored as JSON on the order):
- price_above / price_below: {"price": float}
- time:                      {"trigger_at": ISO-8601 UTC}
- indicator:                 {"indicator": str,
                              "operator": "above" | "below",
                              "value": float}

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from core.exceptions import InvalidConfigError
from storage.models.enums import TriggerType


INDICATOR_OPERATORS = ("above", "below")


@dataclass
class ConditionalOrderConfig:
    """Conditional order engine configuration."""

    enabled: bool = False
    """Feature flag; creation raises and checks return nothing while off."""

    max_active: int = 20
    """Maximum pending conditional orders."""

    def validate(self) -> None:
        if self.max_active < 1:
            raise InvalidConfigError("max_active", self.max_active, "must be at least 1")


@dataclass
class OrderAction:
    """What to do when the order fires."""

    type: str
    """'buy' or 'sell'."""

    shares: Optional[float] = None
    pct: Optional[float] = None
    """Fraction of the position to sell, when shares is not given."""

    limit_price: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in {
            "type": self.type,
            "shares": self.shares,
            "pct": self.pct,
            "limit_price": self.limit_price,
        }.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderAction":
        return cls(
            type=str(data.get("type", "")),
            shares=data.get("shares"),
            pct=data.get("pct"),
            limit_price=data.get("limit_price"),
        )


@dataclass
class ConditionalOrderRequest:
    """Parameters of a new conditional order."""

    symbol: str
    trigger_type: TriggerType
    trigger_condition: Dict[str, Any]
    action: OrderAction
    expires_at: Optional[datetime] = None


@dataclass
class TriggeredAction:
    """A conditional order that fired this cycle."""

    order_id: int
    symbol: str
    trigger_type: TriggerType
    action: OrderAction


@dataclass
class ConditionalOrderStatusReport:
    active_count: int
    triggered_today: int
    by_type: Dict[str, int] = field(default_factory=dict)
