"""
Trade Planning - Configuration.

============================================================
PURPOSE
============================================================
Sizing and approval settings for trade plans.

============================================================
"""

from dataclasses import dataclass

from core.exceptions import InvalidConfigError
from storage.models.enums import AccountType


@dataclass
class PlanningConfig:
    """Trade planner and approval configuration."""

    min_risk_reward_ratio: float = 1.5
    """BUY plans below this reward/risk ratio are never written."""

    approval_timeout_minutes: float = 5.0
    """Pending plans expire this long after creation."""

    max_hold_days: int = 30
    """Default holding limit stored on every plan."""

    require_approval: bool = False
    """Wait for a human decision instead of auto-approving."""

    timeout_policy: str = "reject"
    """What happens to a pending plan at expiry: execute, reject or expire."""

    account_type: AccountType = AccountType.INVEST

    def validate(self) -> None:
        if self.min_risk_reward_ratio < 0:
            raise InvalidConfigError("min_risk_reward_ratio", self.min_risk_reward_ratio, "must not be negative")
        if self.approval_timeout_minutes <= 0:
            raise InvalidConfigError("approval_timeout_minutes", self.approval_timeout_minutes, "must be positive")
        if self.max_hold_days < 1:
            raise InvalidConfigError("max_hold_days", self.max_hold_days, "must be at least 1")
        if self.timeout_policy not in ("execute", "reject", "expire"):
            raise InvalidConfigError("timeout_policy", self.timeout_policy, "must be execute, reject or expire")
