"""
Tests for Trade Planning.

============================================================
PURPOSE
============================================================
Plan sizing, the risk envelope and the approval workflow.

TEST PRINCIPLES:
- Shares are floored, never rounded up
- Unsizable and low-R:R plans are never written
- One live plan per symbol
- Every transition happens at most once

============================================================
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from core.exceptions import StateTransitionError
from monitoring.audit import AuditLogger
from risk_management.types import PortfolioState
from storage.models.enums import AuditEventType, PlanStatus
from storage.repositories import TradePlanRepository
from trade_planning import (
    ApprovalManager,
    ApprovalPolicy,
    PlanningConfig,
    ScoringSignal,
    SignalDecision,
    TimeoutPolicy,
    TradePlanner,
    risk_reward_ratio,
)


def make_signal(**overrides) -> ScoringSignal:
    fields = {
        "decision": "BUY",
        "conviction": 72,
        "reasoning": "Breakout above resistance",
        "risks": ["earnings next week"],
        "suggested_stop_loss_pct": 0.05,
        "suggested_position_size_pct": 0.10,
        "suggested_take_profit_pct": 0.15,
    }
    fields.update(overrides)
    return ScoringSignal(**fields)


def portfolio(total_value: float = 50_000.0) -> PortfolioState:
    return PortfolioState(cash=total_value, total_value=total_value)


@pytest.fixture
def planner(session, clock):
    """Create a planner with default settings."""
    return TradePlanner(session, clock, PlanningConfig())


# =============================================================
# TEST: SIGNAL SCHEMA
# =============================================================

class TestScoringSignal:
    """Tests for ScoringSignal validation."""

    def test_hold_is_not_actionable(self):
        """HOLD signals are not actionable."""
        assert not make_signal(decision="HOLD").is_actionable
        assert make_signal(decision="SELL").is_actionable

    def test_conviction_out_of_range_rejected(self):
        """Conviction must be within 0-100."""
        with pytest.raises(ValidationError):
            make_signal(conviction=140)

    def test_stop_loss_must_be_fraction(self):
        """Stop-loss percent must be below 1."""
        with pytest.raises(ValidationError):
            make_signal(suggested_stop_loss_pct=1.5)

    def test_text_exit_conditions_wrapped(self):
        """Free-text exit conditions become a description."""
        signal = make_signal(exit_conditions="exit on guidance cut")
        assert signal.exit_conditions.description == "exit on guidance cut"
        assert signal.exit_conditions.exit_flag is False

    def test_parses_json(self):
        """Signals parse from model JSON output."""
        signal = ScoringSignal.model_validate_json(
            '{"decision": "SELL", "conviction": 55, "suggested_stop_loss_pct": 0.04,'
            ' "suggested_position_size_pct": 0.05, "suggested_take_profit_pct": 0.1}'
        )
        assert signal.decision == SignalDecision.SELL


# =============================================================
# TEST: PLAN CREATION
# =============================================================

class TestTradePlanner:
    """Tests for TradePlanner.create_plan."""

    def test_sizes_plan_from_portfolio_value(self, planner):
        """50k portfolio, 10% size at 100 gives 50 shares with a 3:1 envelope."""
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())

        assert plan is not None
        assert plan.shares == 50
        assert plan.position_value == pytest.approx(5000.0)
        assert plan.position_size_pct == pytest.approx(0.10)
        assert plan.stop_loss_price == pytest.approx(95.0)
        assert plan.take_profit_price == pytest.approx(115.0)
        assert plan.max_loss_dollars == pytest.approx(250.0)
        assert plan.risk_reward_ratio == pytest.approx(3.0)
        assert plan.status == PlanStatus.PENDING.value
        assert plan.side == "BUY"

    def test_shares_are_floored(self, planner):
        """Fractional share counts round down."""
        plan = planner.create_plan(make_signal(), "MSFT", "MSFT_US_EQ", 333.0, portfolio())
        # 5000 / 333 = 15.01
        assert plan.shares == 15

    def test_zero_shares_not_persisted(self, planner, session):
        """A plan that sizes to zero shares is never written."""
        plan = planner.create_plan(make_signal(), "BRK", "BRK_US_EQ", 600_000.0, portfolio())

        assert plan is None
        assert TradePlanRepository(session).count() == 0

    def test_low_risk_reward_not_persisted(self, planner, session):
        """BUY plans below the minimum R:R are dropped."""
        signal = make_signal(suggested_stop_loss_pct=0.10, suggested_take_profit_pct=0.10)
        plan = planner.create_plan(signal, "AAPL", "AAPL_US_EQ", 100.0, portfolio())

        assert plan is None
        assert TradePlanRepository(session).count() == 0

    def test_sell_plan_ignores_risk_reward(self, planner):
        """The R:R minimum applies to BUY plans only."""
        signal = make_signal(decision="SELL", suggested_stop_loss_pct=0.10, suggested_take_profit_pct=0.05)
        plan = planner.create_plan(signal, "AAPL", "AAPL_US_EQ", 100.0, portfolio())
        assert plan is not None
        assert plan.side == "SELL"

    def test_hold_creates_nothing(self, planner):
        """HOLD signals never produce plans."""
        assert planner.create_plan(make_signal(decision="HOLD"), "AAPL", "AAPL_US_EQ", 100.0, portfolio()) is None

    def test_one_live_plan_per_symbol(self, planner):
        """A second signal for a symbol with a live plan is ignored."""
        first = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())
        second = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 101.0, portfolio())

        assert first is not None
        assert second is None

    def test_new_plan_after_previous_resolved(self, planner):
        """A rejected plan no longer blocks the symbol."""
        first = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())
        planner.reject_plan(first.id, "alice")

        assert planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio()) is not None

    def test_expiry_and_hold_days(self, planner, clock):
        """Plans expire after the approval timeout and carry max hold days."""
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())

        assert plan.expires_at == clock.now() + timedelta(minutes=5)
        assert plan.max_hold_days == 30
        assert plan.exit_conditions["max_hold_days"] == 30

    def test_format_plan_message(self, planner):
        """The approval message shows the envelope."""
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())
        message = planner.format_plan_message(plan)

        assert f"TRADE PLAN #{plan.id}: AAPL" in message
        assert "Stop Loss: $95.00" in message
        assert "Risk/Reward: 1:3.0" in message
        assert "earnings next week" in message

    def test_risk_reward_ratio_zero_risk(self):
        """A zero-width stop yields 0 rather than dividing by zero."""
        assert risk_reward_ratio(100.0, 100.0, 110.0) == 0.0


# =============================================================
# TEST: TRANSITIONS
# =============================================================

class TestPlanTransitions:
    """Tests for compare-and-swap plan transitions."""

    def test_approve_twice(self, planner):
        """Only the first approval moves the plan."""
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())

        assert planner.approve_plan(plan.id, "alice") is not None
        assert planner.approve_plan(plan.id, "bob") is None
        assert planner.get_plan(plan.id).approved_by == "alice"

    def test_executed_requires_approved(self, planner, session):
        """A pending plan cannot be marked executed."""
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())
        with pytest.raises(StateTransitionError):
            TradePlanRepository(session).transition_status(
                plan.id, PlanStatus.PENDING, PlanStatus.EXECUTED
            )

    def test_executed_is_terminal(self, planner):
        """Executed plans cannot be rejected."""
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())
        planner.approve_plan(plan.id)
        assert planner.mark_executed(plan.id) is not None

        assert planner.reject_plan(plan.id) is None
        assert planner.get_plan(plan.id).status == PlanStatus.EXECUTED.value


# =============================================================
# TEST: APPROVAL MANAGER
# =============================================================

class TestApprovalManager:
    """Tests for ApprovalManager."""

    def test_auto_policy_approves(self, planner):
        """AUTO approves immediately and asks for execution."""
        manager = ApprovalManager(planner, ApprovalPolicy.AUTO)
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())

        decision = manager.process_new_plan(plan)

        assert decision.should_execute
        assert decision.plan.status == PlanStatus.APPROVED.value
        assert decision.plan.approved_by == "auto"

    def test_manual_policy_waits(self, planner):
        """MANUAL leaves the plan pending."""
        manager = ApprovalManager(planner, ApprovalPolicy.MANUAL)
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())

        decision = manager.process_new_plan(plan)

        assert not decision.should_execute
        assert planner.get_plan(plan.id).status == PlanStatus.PENDING.value

    def test_second_decision_is_noop(self, planner, session, clock):
        """A reject after an approval changes nothing and is not audited."""
        audit = AuditLogger(session, clock)
        manager = ApprovalManager(planner, ApprovalPolicy.MANUAL, audit=audit)
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())

        assert manager.handle_approval(plan.id, True, "alice") is not None
        assert manager.handle_approval(plan.id, False, "bob") is None

        assert planner.get_plan(plan.id).status == PlanStatus.APPROVED.value
        controls = audit.get_entries(event_type=AuditEventType.CONTROL)
        assert len(controls) == 1

    @pytest.mark.parametrize("policy,expected_status,returned", [
        (TimeoutPolicy.EXECUTE, PlanStatus.APPROVED, 1),
        (TimeoutPolicy.REJECT, PlanStatus.REJECTED, 0),
        (TimeoutPolicy.EXPIRE, PlanStatus.EXPIRED, 0),
    ])
    def test_timeout_policies(self, planner, clock, policy, expected_status, returned):
        """Expired pending plans follow the timeout policy."""
        manager = ApprovalManager(planner, ApprovalPolicy.MANUAL, policy)
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())

        clock.advance(minutes=6)
        approved = manager.check_expired_plans()

        assert len(approved) == returned
        assert planner.get_plan(plan.id).status == expected_status.value
        if returned:
            assert approved[0].approved_by == "auto-timeout"

    def test_sweep_before_expiry_does_nothing(self, planner, clock):
        """Plans inside their window are left pending."""
        manager = ApprovalManager(planner, ApprovalPolicy.MANUAL, TimeoutPolicy.REJECT)
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())

        clock.advance(minutes=4)
        manager.check_expired_plans()

        assert planner.get_plan(plan.id).status == PlanStatus.PENDING.value

    def test_repeated_sweeps_transition_once(self, planner, clock):
        """A second sweep finds nothing left to move."""
        manager = ApprovalManager(planner, ApprovalPolicy.MANUAL, TimeoutPolicy.EXECUTE)
        planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())

        clock.advance(minutes=10)
        assert len(manager.check_expired_plans()) == 1
        assert manager.check_expired_plans() == []

    def test_unexecuted_approved_plan_expires(self, planner, clock):
        """An approved plan left unexecuted past the timeout expires and frees its symbol."""
        manager = ApprovalManager(planner, ApprovalPolicy.MANUAL, TimeoutPolicy.REJECT)
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())
        manager.handle_approval(plan.id, True, "alice")

        clock.advance(minutes=4)
        manager.check_expired_plans()
        assert planner.get_plan(plan.id).status == PlanStatus.APPROVED.value

        clock.advance(minutes=2)
        assert manager.check_expired_plans() == []
        assert planner.get_plan(plan.id).status == PlanStatus.EXPIRED.value
        assert planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio()) is not None

    def test_executed_plan_never_expires(self, planner, clock):
        """Only plans still approved are swept."""
        manager = ApprovalManager(planner, ApprovalPolicy.AUTO)
        plan = planner.create_plan(make_signal(), "AAPL", "AAPL_US_EQ", 100.0, portfolio())
        manager.process_new_plan(plan)
        planner.mark_executed(plan.id)

        clock.advance(hours=1)
        manager.check_expired_plans()

        assert planner.get_plan(plan.id).status == PlanStatus.EXECUTED.value
