"""
Pydantic Schemas for Scoring Signals.

A scoring signal is what the model emits for one symbol. It is
validated here before it reaches the planner; out-of-range values
are rejected, free-text exit conditions are wrapped.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================
# ENUMS
# =============================================================

class SignalDecision(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class Urgency(str, Enum):
    IMMEDIATE = "immediate"
    WAIT_FOR_DIP = "wait_for_dip"
    NO_RUSH = "no_rush"


# =============================================================
# SIGNAL
# =============================================================

class ExitConditions(BaseModel):
    """Model-suggested exit conditions, stored on the plan and position."""
    description: str = ""
    exit_flag: bool = False
    price_target: Optional[float] = Field(default=None, gt=0)
    max_hold_days: Optional[int] = Field(default=None, ge=1)


class ScoringSignal(BaseModel):
    """Validated output of a scoring model for one symbol."""
    decision: SignalDecision
    conviction: float = Field(ge=0, le=100)
    reasoning: str = ""
    risks: List[str] = Field(default_factory=list)

    suggested_stop_loss_pct: float = Field(gt=0, lt=1)
    suggested_position_size_pct: float = Field(gt=0, le=1)
    suggested_take_profit_pct: float = Field(gt=0)

    urgency: Urgency = Urgency.NO_RUSH
    exit_conditions: ExitConditions = Field(default_factory=ExitConditions)

    # Sub-scores
    technical_score: Optional[float] = None
    fundamental_score: Optional[float] = None
    sentiment_score: Optional[float] = None
    model_name: Optional[str] = None

    @field_validator("exit_conditions", mode="before")
    @classmethod
    def _wrap_text_conditions(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            return {"description": value}
        return value

    @property
    def is_actionable(self) -> bool:
        return self.decision != SignalDecision.HOLD

    def exit_conditions_dict(self) -> Dict[str, Any]:
        return self.exit_conditions.model_dump(exclude_none=True)
