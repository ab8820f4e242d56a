"""
Trade Planning - Trade Planner.

============================================================
PURPOSE
============================================================
Turns a validated scoring signal into a sized, persisted trade
plan with its risk envelope.

SIZING:
    shares     = floor(portfolio_value * size_pct / price)
    stop       = entry * (1 - stop_pct)
    target     = entry * (1 + target_pct)
    max_loss   = (entry - stop) * shares
    R:R        = (target - entry) / (entry - stop)

A plan that cannot be sized, a BUY below the minimum R:R, a HOLD
or a symbol that already has a live plan yields None and nothing
is written.

============================================================
"""

import logging
import math
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from core.clock import ClockProtocol, SystemClock
from storage.models.enums import PlanStatus, TradeSide
from storage.models.trading import TradePlan
from storage.repositories import TradePlanRepository
from risk_management.types import PortfolioState
from trade_planning.config import PlanningConfig
from trade_planning.schemas import ScoringSignal, SignalDecision


logger = logging.getLogger(__name__)


def risk_reward_ratio(entry: float, stop: float, target: float) -> float:
    risk = entry - stop
    if risk == 0:
        return 0.0
    return (target - entry) / risk


class TradePlanner:
    """Creates trade plans and moves them through their lifecycle."""

    def __init__(
        self,
        session: Session,
        clock: Optional[ClockProtocol] = None,
        config: Optional[PlanningConfig] = None,
    ):
        self._repo = TradePlanRepository(session)
        self._clock = clock or SystemClock()
        self._config = config or PlanningConfig()
        self._config.validate()

    @property
    def config(self) -> PlanningConfig:
        return self._config

    # --------------------------------------------------------
    # CREATION
    # --------------------------------------------------------

    def create_plan(
        self,
        signal: ScoringSignal,
        symbol: str,
        ticker: str,
        price: float,
        portfolio: PortfolioState,
        sector: Optional[str] = None,
    ) -> Optional[TradePlan]:
        if signal.decision == SignalDecision.HOLD:
            logger.debug(f"HOLD signal for {symbol}, no plan")
            return None

        if price <= 0 or portfolio.total_value <= 0:
            logger.warning(f"Cannot size {symbol}: price={price} portfolio={portfolio.total_value}")
            return None

        existing = self._repo.get_live_for_symbol(symbol)
        if existing is not None:
            logger.info(f"{symbol} already has live plan {existing.id} ({existing.status})")
            return None

        shares = math.floor(portfolio.total_value * signal.suggested_position_size_pct / price)
        if shares <= 0:
            logger.warning(f"Calculated 0 shares for {symbol} @ {price:.2f}, no plan")
            return None

        position_value = shares * price
        stop_loss_price = price * (1 - signal.suggested_stop_loss_pct)
        take_profit_price = price * (1 + signal.suggested_take_profit_pct)
        rr = risk_reward_ratio(price, stop_loss_price, take_profit_price)

        side = TradeSide(signal.decision.value)
        if side == TradeSide.BUY and rr < self._config.min_risk_reward_ratio:
            logger.warning(
                f"Risk/reward {rr:.2f} for {symbol} below minimum {self._config.min_risk_reward_ratio:.2f}"
            )
            return None

        now = self._clock.now()
        exit_conditions = signal.exit_conditions_dict()
        exit_conditions.setdefault("max_hold_days", self._config.max_hold_days)

        plan = self._repo.create_plan(
            symbol=symbol,
            ticker=ticker,
            side=side,
            status=PlanStatus.PENDING,
            entry_price=price,
            shares=float(shares),
            position_value=position_value,
            position_size_pct=position_value / portfolio.total_value,
            stop_loss_price=stop_loss_price,
            stop_loss_pct=signal.suggested_stop_loss_pct,
            take_profit_price=take_profit_price,
            take_profit_pct=signal.suggested_take_profit_pct,
            max_loss_dollars=(price - stop_loss_price) * shares,
            risk_reward_ratio=rr,
            max_hold_days=exit_conditions["max_hold_days"],
            conviction=signal.conviction,
            technical_score=signal.technical_score,
            fundamental_score=signal.fundamental_score,
            sentiment_score=signal.sentiment_score,
            reasoning=signal.reasoning,
            model_name=signal.model_name,
            risks=list(signal.risks),
            urgency=signal.urgency.value,
            exit_conditions=exit_conditions,
            sector=sector,
            account_type=self._config.account_type,
            created_at=now,
            expires_at=now + timedelta(minutes=self._config.approval_timeout_minutes),
        )
        self._repo.commit()

        logger.info(
            f"Trade plan {plan.id} created: {side.value} {shares} {symbol} @ {price:.2f} "
            f"stop={stop_loss_price:.2f} target={take_profit_price:.2f} R:R={rr:.2f} "
            f"conviction={signal.conviction:.0f}"
        )
        return plan

    # --------------------------------------------------------
    # TRANSITIONS
    # --------------------------------------------------------

    def approve_plan(self, plan_id: int, approved_by: str = "auto") -> Optional[TradePlan]:
        """pending -> approved. None when the plan is no longer pending."""
        plan = self._repo.transition_status(
            plan_id,
            PlanStatus.PENDING,
            PlanStatus.APPROVED,
            approved_by=approved_by,
            approved_at=self._clock.now(),
        )
        self._repo.commit()
        if plan is not None:
            logger.info(f"Plan {plan_id} ({plan.symbol}) approved by {approved_by}")
        return plan

    def reject_plan(self, plan_id: int, rejected_by: Optional[str] = None) -> Optional[TradePlan]:
        """pending or approved -> rejected. None when already resolved."""
        now = self._clock.now()
        plan = None
        for expected in (PlanStatus.PENDING, PlanStatus.APPROVED):
            plan = self._repo.transition_status(plan_id, expected, PlanStatus.REJECTED, resolved_at=now)
            if plan is not None:
                break
        self._repo.commit()
        if plan is not None:
            by = f" by {rejected_by}" if rejected_by else ""
            logger.info(f"Plan {plan_id} ({plan.symbol}) rejected{by}")
        return plan

    def mark_executed(self, plan_id: int) -> Optional[TradePlan]:
        plan = self._repo.transition_status(
            plan_id,
            PlanStatus.APPROVED,
            PlanStatus.EXECUTED,
            resolved_at=self._clock.now(),
        )
        self._repo.commit()
        return plan

    def expire_plan(self, plan_id: int, expected: PlanStatus = PlanStatus.PENDING) -> Optional[TradePlan]:
        """pending (or approved, never executed) -> expired."""
        plan = self._repo.transition_status(
            plan_id,
            expected,
            PlanStatus.EXPIRED,
            resolved_at=self._clock.now(),
        )
        self._repo.commit()
        if plan is not None:
            logger.info(f"Plan {plan_id} ({plan.symbol}) expired while {PlanStatus(expected).value}")
        return plan

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    def get_plan(self, plan_id: int) -> Optional[TradePlan]:
        return self._repo.get(plan_id)

    def get_pending_plans(self) -> List[TradePlan]:
        return self._repo.get_by_status(PlanStatus.PENDING)

    def get_pending_past_expiry(self) -> List[TradePlan]:
        return self._repo.get_pending_past_expiry(self._clock.now())

    def get_stale_approved(self) -> List[TradePlan]:
        """Approved plans left unexecuted for longer than the approval timeout."""
        cutoff = self._clock.now() - timedelta(minutes=self._config.approval_timeout_minutes)
        return self._repo.get_approved_before(cutoff)

    def get_recent_plans(self, limit: int = 20) -> List[TradePlan]:
        return self._repo.get_recent(limit)

    @staticmethod
    def format_plan_message(plan: TradePlan) -> str:
        """Plain-text plan summary for the human approval channel."""
        lines = [
            f"TRADE PLAN #{plan.id}: {plan.symbol}",
            "-" * 30,
            f"Side: {plan.side}",
            f"Entry Price: ${plan.entry_price:.2f}",
            f"Shares: {plan.shares:g} (${plan.position_value:.2f} = {plan.position_size_pct * 100:.1f}% of portfolio)",
            f"Stop Loss: ${plan.stop_loss_price:.2f} (-{plan.stop_loss_pct * 100:.1f}%) "
            f"-> max loss: ${plan.max_loss_dollars:.2f}",
            f"Take Profit: ${plan.take_profit_price:.2f} (+{plan.take_profit_pct * 100:.1f}%)",
            f"Risk/Reward: 1:{plan.risk_reward_ratio:.1f}",
        ]
        if plan.max_hold_days:
            lines.append(f"Max Hold: {plan.max_hold_days} days")
        lines.append(f"Conviction: {plan.conviction:.0f}/100")
        lines.append(f"Reasoning: {plan.reasoning or 'N/A'}")
        if plan.risks:
            lines.append(f"Risks: {', '.join(plan.risks)}")
        if plan.expires_at is not None:
            lines.append(f"Expires: {plan.expires_at.strftime('%Y-%m-%d %H:%M UTC')}")
        return "\n".join(lines)
