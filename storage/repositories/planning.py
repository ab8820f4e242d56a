"""
Trade Plan Repository.

============================================================
PURPOSE
============================================================
Persistence for trade plans. Plans are immutable once created
apart from their status and approval fields, which only move
through compare-and-swap transitions:

    pending  -> approved | rejected | expired
    approved -> executed | rejected | expired

A transition whose expected status no longer matches is a no-op
(returns None), so overlapping sweeps never double-transition.

============================================================
"""

from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from core.exceptions import StateTransitionError
from storage.models.enums import AccountType, PlanStatus, TradeSide
from storage.models.trading import TradePlan
from storage.repositories.base import BaseRepository


PLAN_TRANSITIONS: Dict[PlanStatus, FrozenSet[PlanStatus]] = {
    PlanStatus.PENDING: frozenset({PlanStatus.APPROVED, PlanStatus.REJECTED, PlanStatus.EXPIRED}),
    PlanStatus.APPROVED: frozenset({PlanStatus.EXECUTED, PlanStatus.REJECTED, PlanStatus.EXPIRED}),
    PlanStatus.REJECTED: frozenset(),
    PlanStatus.EXECUTED: frozenset(),
    PlanStatus.EXPIRED: frozenset(),
}


class TradePlanRepository(BaseRepository[TradePlan]):
    """Repository for trade plans."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, TradePlan, "TradePlanRepository")

    def create_plan(self, **fields: Any) -> TradePlan:
        """
        Persist a new plan.

        ``side``, ``status`` and ``account_type`` are validated against
        their closed enumerations.
        """
        fields["side"] = self._validate_enum("side", fields.get("side"), TradeSide)
        fields["status"] = self._validate_enum(
            "status", fields.get("status", PlanStatus.PENDING), PlanStatus
        )
        fields["account_type"] = self._validate_enum(
            "account_type", fields.get("account_type", AccountType.INVEST), AccountType
        )
        fields.setdefault("risks", [])
        return self._add(TradePlan(**fields))

    def get_live_for_symbol(self, symbol: str) -> Optional[TradePlan]:
        """Pending or approved plan for ``symbol``, if any."""
        stmt = (
            select(TradePlan)
            .where(
                TradePlan.symbol == symbol,
                TradePlan.status.in_([PlanStatus.PENDING.value, PlanStatus.APPROVED.value]),
            )
            .order_by(desc(TradePlan.created_at))
        )
        return self._execute_scalar(stmt)

    def get_by_status(self, status: Any, limit: Optional[int] = None) -> List[TradePlan]:
        value = self._validate_enum("status", status, PlanStatus)
        stmt = (
            select(TradePlan)
            .where(TradePlan.status == value)
            .order_by(TradePlan.created_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._execute_query(stmt)

    def get_pending_past_expiry(self, now: datetime) -> List[TradePlan]:
        stmt = (
            select(TradePlan)
            .where(
                TradePlan.status == PlanStatus.PENDING.value,
                TradePlan.expires_at.is_not(None),
                TradePlan.expires_at < now,
            )
            .order_by(TradePlan.expires_at)
        )
        return self._execute_query(stmt)

    def get_approved_before(self, cutoff: datetime) -> List[TradePlan]:
        """Approved plans that were approved strictly before ``cutoff`` and never executed."""
        stmt = (
            select(TradePlan)
            .where(
                TradePlan.status == PlanStatus.APPROVED.value,
                TradePlan.approved_at.is_not(None),
                TradePlan.approved_at < cutoff,
            )
            .order_by(TradePlan.approved_at)
        )
        return self._execute_query(stmt)

    def get_recent(self, limit: int = 20) -> List[TradePlan]:
        stmt = select(TradePlan).order_by(desc(TradePlan.created_at), desc(TradePlan.id)).limit(limit)
        return self._execute_query(stmt)

    def transition_status(
        self,
        plan_id: int,
        expected: Any,
        new: Any,
        **values: Any,
    ) -> Optional[TradePlan]:
        """
        Move a plan from ``expected`` to ``new`` if it is still ``expected``.

        Raises:
            InvalidStatusError: either status is outside PlanStatus
            StateTransitionError: the edge is not part of the lifecycle
        """
        expected_status = PlanStatus(self._validate_enum("status", expected, PlanStatus))
        new_status = PlanStatus(self._validate_enum("status", new, PlanStatus))

        if new_status not in PLAN_TRANSITIONS[expected_status]:
            raise StateTransitionError(
                f"Plan {plan_id}: {expected_status.value} -> {new_status.value} is not allowed",
                from_state=expected_status.value,
                to_state=new_status.value,
            )

        values["status"] = new_status.value
        return self._compare_and_swap(plan_id, expected_status.value, values)
