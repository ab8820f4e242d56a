"""
Orchestrator - Configuration.

============================================================
RESPONSIBILITY
============================================================
Aggregates the per-package configurations into one object and
loads overrides from the environment (.env via python-dotenv).

ENVIRONMENT:
- DRY_RUN                  simulated fills (default true)
- REQUIRE_APPROVAL         manual plan approval (default false)
- APPROVAL_TIMEOUT_POLICY  execute | reject | expire
- APPROVAL_TIMEOUT_MINUTES pending plan lifetime
- DATABASE_URL             SQLAlchemy URL
- BROKER_BASE_URL          REST broker root (live only)
- BROKER_API_KEY           REST broker key
- LOG_LEVEL / LOG_FORMAT   logging setup
- PAPER_CASH               starting cash of the paper broker
- DCA_ENABLED / PARTIAL_EXITS_ENABLED / CONDITIONAL_ORDERS_ENABLED

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from core.exceptions import InvalidConfigError
from conditional_orders.types import ConditionalOrderConfig
from execution_engine.config import ExecutionConfig, OrderReplacerConfig
from position_management.config import DCAConfig, ExitConfig, PartialExitConfig
from risk_management.config import CooldownConfig, ProtectionConfig, RiskConfig
from storage.database import DEFAULT_DATABASE_URL
from trade_planning.config import PlanningConfig


LOG_FORMATS = ("text", "json")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Complete engine configuration."""

    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    replacer: OrderReplacerConfig = field(default_factory=OrderReplacerConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    cooldown: CooldownConfig = field(default_factory=CooldownConfig)
    protections: ProtectionConfig = field(default_factory=ProtectionConfig)
    planning: PlanningConfig = field(default_factory=PlanningConfig)
    exits: ExitConfig = field(default_factory=ExitConfig)
    dca: DCAConfig = field(default_factory=DCAConfig)
    partial_exits: PartialExitConfig = field(default_factory=PartialExitConfig)
    conditional_orders: ConditionalOrderConfig = field(default_factory=ConditionalOrderConfig)

    database_url: str = DEFAULT_DATABASE_URL

    broker_base_url: str = ""
    """REST broker root; required when dry_run is off."""

    broker_api_key: Optional[str] = None

    paper_cash: float = 100_000.0
    """Cash reported by the paper broker in dry-run mode."""

    portfolio_cache_max_age_minutes: float = 30.0
    """How long cached cash figures may stand in for the broker."""

    log_level: str = "INFO"
    log_format: str = "text"

    @property
    def dry_run(self) -> bool:
        return self.execution.dry_run

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "EngineConfig":
        """Defaults overridden by the environment and an optional .env file."""
        load_dotenv(env_file)
        config = cls()

        config.execution.dry_run = _env_bool("DRY_RUN", config.execution.dry_run)
        config.planning.require_approval = _env_bool("REQUIRE_APPROVAL", config.planning.require_approval)
        config.planning.timeout_policy = os.getenv(
            "APPROVAL_TIMEOUT_POLICY", config.planning.timeout_policy
        ).strip().lower()
        if os.getenv("APPROVAL_TIMEOUT_MINUTES"):
            config.planning.approval_timeout_minutes = float(os.environ["APPROVAL_TIMEOUT_MINUTES"])

        config.dca.enabled = _env_bool("DCA_ENABLED", config.dca.enabled)
        config.partial_exits.enabled = _env_bool("PARTIAL_EXITS_ENABLED", config.partial_exits.enabled)
        config.conditional_orders.enabled = _env_bool(
            "CONDITIONAL_ORDERS_ENABLED", config.conditional_orders.enabled
        )
        config.replacer.enabled = _env_bool("ORDER_REPLACER_ENABLED", config.replacer.enabled)

        config.database_url = os.getenv("DATABASE_URL", config.database_url)
        config.broker_base_url = os.getenv("BROKER_BASE_URL", config.broker_base_url)
        config.broker_api_key = os.getenv("BROKER_API_KEY", config.broker_api_key)
        if os.getenv("PAPER_CASH"):
            config.paper_cash = float(os.environ["PAPER_CASH"])
        if os.getenv("PORTFOLIO_CACHE_MAX_AGE_MINUTES"):
            config.portfolio_cache_max_age_minutes = float(os.environ["PORTFOLIO_CACHE_MAX_AGE_MINUTES"])

        config.log_level = os.getenv("LOG_LEVEL", config.log_level).upper()
        config.log_format = os.getenv("LOG_FORMAT", config.log_format).lower()
        return config

    def validate(self) -> None:
        """Validate every section; raises InvalidConfigError on the first problem."""
        for section in (
            self.execution,
            self.replacer,
            self.risk,
            self.cooldown,
            self.protections,
            self.planning,
            self.exits,
            self.dca,
            self.partial_exits,
            self.conditional_orders,
        ):
            section.validate()

        if not self.execution.dry_run and not self.broker_base_url:
            raise InvalidConfigError("broker_base_url", self.broker_base_url, "required when dry_run is off")
        if self.paper_cash < 0:
            raise InvalidConfigError("paper_cash", self.paper_cash, "must not be negative")
        if self.portfolio_cache_max_age_minutes <= 0:
            raise InvalidConfigError(
                "portfolio_cache_max_age_minutes", self.portfolio_cache_max_age_minutes, "must be positive"
            )
        if self.log_format not in LOG_FORMATS:
            raise InvalidConfigError("log_format", self.log_format, f"must be one of {LOG_FORMATS}")
