"""
Tests for Storage.

============================================================
PURPOSE
============================================================
Repositories, compare-and-swap status changes, closed status
enumerations and the order state machine.

TEST PRINCIPLES:
- Status columns never accept values outside their enum
- A status moves at most once per expected value
- Datetimes come back timezone-aware UTC

============================================================
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.clock import MockClock, ensure_utc, from_iso8601, to_iso8601
from core.exceptions import StateTransitionError
from execution_engine import OrderStateMachine, TransitionGuard
from storage.database import initialize_database, transaction_scope
from storage.models.enums import LockReason, OrderStatus, OrderTag, PlanStatus, TradeSide
from storage.models.trading import Position
from storage.repositories import (
    DuplicateRecordError,
    InvalidStatusError,
    OrderRepository,
    PairLockRepository,
    PortfolioSnapshotRepository,
    PositionRepository,
    TradePlanRepository,
)


def make_plan(repo: TradePlanRepository, now: datetime, symbol: str = "AAPL"):
    plan = repo.create_plan(
        symbol=symbol,
        ticker=f"{symbol}_US_EQ",
        side=TradeSide.BUY,
        entry_price=100.0,
        shares=10,
        position_value=1000.0,
        position_size_pct=0.1,
        stop_loss_price=95.0,
        stop_loss_pct=0.05,
        take_profit_price=115.0,
        take_profit_pct=0.15,
        max_loss_dollars=50.0,
        risk_reward_ratio=3.0,
        created_at=now,
        expires_at=now + timedelta(minutes=5),
    )
    repo.commit()
    return plan


def make_order(session, clock, **overrides):
    fields = dict(
        symbol="AAPL",
        side=TradeSide.BUY,
        tag=OrderTag.ENTRY,
        requested_quantity=10,
        now=clock.now(),
        requested_price=100.0,
    )
    fields.update(overrides)
    return OrderRepository(session).create_order(**fields)


# =============================================================
# TEST: CLOCK
# =============================================================

class TestClock:
    """Tests for clock helpers."""

    def test_mock_clock_advance(self):
        """advance accepts seconds and timedelta keywords."""
        clock = MockClock(datetime(2026, 1, 5, 14, 0, tzinfo=timezone.utc))
        clock.advance(30, minutes=1)
        assert clock.now() == datetime(2026, 1, 5, 14, 1, 30, tzinfo=timezone.utc)

    def test_freeze_restores(self, clock):
        """freeze pins time and restores it afterwards."""
        original = clock.now()
        with clock.freeze(original + timedelta(days=1)):
            assert clock.now() == original + timedelta(days=1)
        assert clock.now() == original

    def test_naive_datetimes_become_utc(self):
        """Naive values are treated as UTC."""
        naive = datetime(2026, 1, 5, 14, 0)
        assert ensure_utc(naive).tzinfo == timezone.utc

    def test_iso_round_trip(self, clock):
        """ISO helpers keep the instant."""
        assert from_iso8601(to_iso8601(clock.now())) == clock.now()

    def test_minutes_since(self, clock):
        """minutes_since is measured against the clock."""
        moment = clock.now()
        clock.advance(minutes=90)
        assert clock.minutes_since(moment) == 90.0
        assert clock.start_of_day().hour == 0


# =============================================================
# TEST: REPOSITORIES
# =============================================================

class TestRepositories:
    """Tests for repository behaviour."""

    def test_datetimes_reload_aware(self, session, clock):
        """Timestamps reload from the database as aware UTC."""
        plan = make_plan(TradePlanRepository(session), clock.now())
        session.expire_all()

        reloaded = TradePlanRepository(session).get(plan.id)
        assert reloaded.created_at.tzinfo is not None
        assert reloaded.created_at == clock.now()

    def test_invalid_enum_rejected(self, session, clock):
        """Unknown status-like values raise InvalidStatusError."""
        with pytest.raises(InvalidStatusError):
            make_order(session, clock, side="HOLD")
        with pytest.raises(InvalidStatusError):
            PairLockRepository(session).create_lock("AAPL", clock.now(), "vacation", clock.now())

    def test_enum_case_insensitive(self, session, clock):
        """String values match their enum regardless of case."""
        order = make_order(session, clock, side="buy", tag="entry")
        assert order.side == TradeSide.BUY.value
        assert order.tag == OrderTag.ENTRY.value

    def test_duplicate_position(self, session, clock):
        """One position per symbol."""
        positions = PositionRepository(session)
        fields = dict(symbol="AAPL", ticker="AAPL_US_EQ", shares=10, entry_price=100.0, entry_time=clock.now())
        positions.create_position(**fields)

        with pytest.raises(DuplicateRecordError):
            positions.create_position(**fields)

    def test_position_defaults(self, session, clock):
        """updated_at defaults to the entry time."""
        position = PositionRepository(session).create_position(
            symbol="AAPL", ticker="AAPL_US_EQ", shares=10, entry_price=100.0, entry_time=clock.now()
        )
        assert isinstance(position, Position)
        assert position.updated_at == clock.now()

    def test_active_locks(self, session, clock):
        """Locks are active strictly before their end."""
        locks = PairLockRepository(session)
        locks.create_lock("AAPL", clock.now() + timedelta(minutes=30), LockReason.COOLDOWN, clock.now())

        assert len(locks.get_active(clock.now(), "AAPL")) == 1
        clock.advance(minutes=30)
        assert locks.get_active(clock.now(), "AAPL") == []
        assert locks.deactivate(locks.get_expired_active(clock.now())) == 1

    def test_snapshot_peak(self, session, clock):
        """Peak value is the maximum over all snapshots."""
        snapshots = PortfolioSnapshotRepository(session)
        assert snapshots.get_peak_value() == 0.0

        snapshots.record_snapshot(clock.now(), 1000.0, 10_000.0, 10_000.0)
        clock.advance(minutes=5)
        snapshots.record_snapshot(clock.now(), 1000.0, 9_000.0, 10_500.0)

        assert snapshots.get_peak_value() == 10_500.0
        assert snapshots.get_latest().total_value == 9_000.0

    def test_replacement_chain(self, session, clock):
        """Chain length counts predecessors."""
        orders = OrderRepository(session)
        first = make_order(session, clock)
        second = make_order(session, clock)
        third = make_order(session, clock)
        orders.link_replacement(first, second)
        orders.link_replacement(second, third)

        assert orders.chain_length(first) == 0
        assert orders.chain_length(third) == 2
        assert orders.get_predecessor(third.id).id == second.id


# =============================================================
# TEST: COMPARE-AND-SWAP
# =============================================================

class TestCompareAndSwap:
    """Tests for status compare-and-swap."""

    def test_transition_once(self, session, clock):
        """The second writer with a stale expectation gets None."""
        repo = TradePlanRepository(session)
        plan = make_plan(repo, clock.now())

        first = repo.transition_status(plan.id, PlanStatus.PENDING, PlanStatus.APPROVED, approved_by="alice")
        second = repo.transition_status(plan.id, PlanStatus.PENDING, PlanStatus.REJECTED)

        assert first is not None
        assert first.status == PlanStatus.APPROVED.value
        assert second is None
        assert repo.get(plan.id).approved_by == "alice"

    def test_edge_not_in_lifecycle(self, session, clock):
        """Edges outside the lifecycle raise."""
        repo = TradePlanRepository(session)
        plan = make_plan(repo, clock.now())

        with pytest.raises(StateTransitionError):
            repo.transition_status(plan.id, PlanStatus.EXPIRED, PlanStatus.APPROVED)

    def test_unknown_status(self, session, clock):
        """Status values outside the enum raise."""
        repo = TradePlanRepository(session)
        plan = make_plan(repo, clock.now())

        with pytest.raises(InvalidStatusError):
            repo.transition_status(plan.id, "pending", "on_hold")

    def test_pending_past_expiry(self, session, clock):
        """Only plans strictly past expiry are returned."""
        repo = TradePlanRepository(session)
        make_plan(repo, clock.now())

        assert repo.get_pending_past_expiry(clock.now() + timedelta(minutes=5)) == []
        assert len(repo.get_pending_past_expiry(clock.now() + timedelta(minutes=6))) == 1


# =============================================================
# TEST: ORDER STATE MACHINE
# =============================================================

class TestOrderStateMachine:
    """Tests for OrderStateMachine."""

    def test_happy_path(self, session, clock):
        """pending -> open -> filled records fill details."""
        order = make_order(session, clock)
        machine = OrderStateMachine(OrderRepository(session), clock)
        events = []
        machine.add_listener(events.append)

        machine.mark_open(order, "b-1")
        machine.mark_filled(order, 10, 100.5)

        assert order.status == OrderStatus.FILLED.value
        assert order.broker_order_id == "b-1"
        assert order.filled_price == 100.5
        assert order.filled_at == clock.now()
        assert [e.to_status for e in events] == [OrderStatus.OPEN, OrderStatus.FILLED]

    def test_terminal_is_final(self, session, clock):
        """Nothing leaves a terminal state."""
        order = make_order(session, clock)
        machine = OrderStateMachine(OrderRepository(session), clock)
        machine.mark_failed(order, "rejected")

        with pytest.raises(StateTransitionError):
            machine.mark_open(order, "b-1")

    def test_listener_failure_isolated(self, session, clock):
        """A failing listener does not block the transition."""
        order = make_order(session, clock)
        machine = OrderStateMachine(OrderRepository(session), clock)

        def broken(event):
            raise RuntimeError("listener down")

        machine.add_listener(broken)
        machine.mark_open(order, "b-1")

        assert order.status == OrderStatus.OPEN.value

    @pytest.mark.parametrize("source,target,allowed", [
        (OrderStatus.PENDING, OrderStatus.FILLED, True),
        (OrderStatus.OPEN, OrderStatus.EXPIRED, True),
        (OrderStatus.PARTIALLY_FILLED, OrderStatus.OPEN, False),
        (OrderStatus.PENDING, OrderStatus.EXPIRED, False),
        (OrderStatus.CANCELLED, OrderStatus.FILLED, False),
    ])
    def test_guard(self, source, target, allowed):
        """Transition table."""
        assert TransitionGuard.can_transition(source, target)[0] is allowed


# =============================================================
# TEST: DATABASE
# =============================================================

class TestDatabase:
    """Tests for session management."""

    def test_initialize_in_memory(self):
        """An in-memory database initializes with every table."""
        factory = initialize_database("sqlite://")
        with transaction_scope(factory) as session:
            assert PositionRepository(session).count_open() == 0

    def test_transaction_scope_rolls_back(self, clock):
        """Work inside a failing scope is discarded."""
        factory = initialize_database("sqlite://")

        with pytest.raises(ValueError):
            with transaction_scope(factory) as session:
                PairLockRepository(session).create_lock(
                    "AAPL", clock.now() + timedelta(minutes=5), LockReason.MANUAL, clock.now()
                )
                raise ValueError("boom")

        with transaction_scope(factory) as session:
            assert PairLockRepository(session).count() == 0
