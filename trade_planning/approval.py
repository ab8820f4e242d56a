"""
Trade Planning - Approval Manager.

============================================================
PURPOSE
============================================================
Human-in-the-loop approval of trade plans.

POLICIES (selected at construction):
- ApprovalPolicy.AUTO:   new plans are approved immediately
- ApprovalPolicy.MANUAL: new plans wait for handle_approval()

- TimeoutPolicy.EXECUTE: expired pending plans are approved
                         ("auto-timeout") and returned for execution
- TimeoutPolicy.REJECT:  expired pending plans are rejected
- TimeoutPolicy.EXPIRE:  expired pending plans are marked expired

Approved plans left unexecuted past the approval timeout are
expired by the same sweep, whatever the policy.

Every transition is compare-and-swap: overlapping sweeps and
repeated decisions move a plan at most once.

============================================================
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from monitoring.audit import AuditLogger
from storage.models.enums import PlanStatus
from storage.models.trading import TradePlan
from trade_planning.planner import TradePlanner


logger = logging.getLogger(__name__)


class ApprovalPolicy(Enum):
    AUTO = "auto"
    MANUAL = "manual"


class TimeoutPolicy(Enum):
    EXECUTE = "execute"
    REJECT = "reject"
    EXPIRE = "expire"


@dataclass
class ApprovalDecision:
    """Result of submitting a new plan for approval."""

    should_execute: bool
    plan: TradePlan


class ApprovalManager:
    """Applies the approval and timeout policies to trade plans."""

    def __init__(
        self,
        planner: TradePlanner,
        policy: ApprovalPolicy = ApprovalPolicy.AUTO,
        timeout_policy: TimeoutPolicy = TimeoutPolicy.REJECT,
        audit: Optional[AuditLogger] = None,
    ):
        self._planner = planner
        self._policy = ApprovalPolicy(policy)
        self._timeout_policy = TimeoutPolicy(timeout_policy)
        self._audit = audit

    @property
    def policy(self) -> ApprovalPolicy:
        return self._policy

    @property
    def timeout_policy(self) -> TimeoutPolicy:
        return self._timeout_policy

    def process_new_plan(self, plan: TradePlan) -> ApprovalDecision:
        if self._policy == ApprovalPolicy.AUTO:
            approved = self._planner.approve_plan(plan.id, "auto")
            if approved is None:
                logger.warning(f"Plan {plan.id} ({plan.symbol}) could not be auto-approved: already {plan.status}")
                return ApprovalDecision(should_execute=False, plan=plan)
            logger.info(f"Plan {plan.id} ({plan.symbol}) auto-approved")
            return ApprovalDecision(should_execute=True, plan=approved)

        logger.info(f"Plan {plan.id} ({plan.symbol}) awaiting manual approval")
        return ApprovalDecision(should_execute=False, plan=plan)

    def handle_approval(self, plan_id: int, approved: bool, by: str = "manual") -> Optional[TradePlan]:
        """
        Apply an external decision.

        Returns the transitioned plan, or None when the plan was
        already decided (the second decision is a no-op).
        """
        if approved:
            plan = self._planner.approve_plan(plan_id, by)
        else:
            plan = self._planner.reject_plan(plan_id, by)

        if plan is None:
            logger.info(f"Decision on plan {plan_id} by {by} ignored: already resolved")
            return None

        if self._audit is not None:
            action = "Plan approved" if approved else "Plan rejected"
            self._audit.log_control(action, by, symbol=plan.symbol, details={"plan_id": plan_id})
        return plan

    def check_expired_plans(self) -> List[TradePlan]:
        """
        Resolve pending plans past their expiry.

        Approved plans never executed within the approval timeout
        (the engine was paused or its figures were stale) are
        expired first so they stop holding their symbol.

        Returns the plans approved by timeout so the caller can
        execute them; empty for the REJECT and EXPIRE policies.
        """
        for plan in self._planner.get_stale_approved():
            if self._planner.expire_plan(plan.id, PlanStatus.APPROVED) is not None and self._audit is not None:
                self._audit.log_control(
                    "Approved plan expired unexecuted", "auto-timeout", symbol=plan.symbol, details={"plan_id": plan.id}
                )

        approved: List[TradePlan] = []
        for plan in self._planner.get_pending_past_expiry():
            if self._timeout_policy == TimeoutPolicy.EXECUTE:
                result = self._planner.approve_plan(plan.id, "auto-timeout")
                if result is not None:
                    logger.info(f"Plan {plan.id} ({plan.symbol}) approved on timeout")
                    approved.append(result)
            elif self._timeout_policy == TimeoutPolicy.REJECT:
                self._planner.reject_plan(plan.id, "auto-timeout")
            else:
                self._planner.expire_plan(plan.id)
        return approved
