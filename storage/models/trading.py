"""
Trading Domain ORM Models.

============================================================
PURPOSE
============================================================
Durable typed records for the trade lifecycle: plans, live
positions, the fill ledger, broker orders, conditional orders,
pair locks, the audit trail and portfolio snapshots.

============================================================
DATA LIFECYCLE ROLE
============================================================
- TradePlan: created by the planner, status moved by approval
  and execution via compare-and-swap
- Position: one row per held symbol, deleted at zero shares
- Trade: append-only fill ledger (entries, exits, DCA, partials)
- Order: broker instructions, status moved by the order state
  machine, replacement chains via replaced_by_order_id
- ConditionalOrder: price/time/indicator triggered instructions
- PairLock: time-bounded entry blocks
- AuditLogEntry: append-only audit trail
- PortfolioSnapshot: cash/value/peak per cycle

============================================================
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base


class TradePlan(Base):
    """
    Sized, persisted proposal to enter or exit a symbol.

    Immutable once created apart from its status and approval
    fields. Plans failing sizing or risk/reward checks are never
    written.
    """

    __tablename__ = "trade_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    ticker: Mapped[str] = mapped_column(String(40), nullable=False, comment="Broker ticker")
    side: Mapped[str] = mapped_column(String(4), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")

    # Sizing
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    shares: Mapped[float] = mapped_column(Float, nullable=False)
    position_value: Mapped[float] = mapped_column(Float, nullable=False)
    position_size_pct: Mapped[float] = mapped_column(Float, nullable=False)

    # Risk envelope
    stop_loss_price: Mapped[float] = mapped_column(Float, nullable=False)
    stop_loss_pct: Mapped[float] = mapped_column(Float, nullable=False)
    take_profit_price: Mapped[float] = mapped_column(Float, nullable=False)
    take_profit_pct: Mapped[float] = mapped_column(Float, nullable=False)
    max_loss_dollars: Mapped[float] = mapped_column(Float, nullable=False)
    risk_reward_ratio: Mapped[float] = mapped_column(Float, nullable=False)
    max_hold_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Model output
    conviction: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    technical_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    fundamental_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    sentiment_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    model_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    risks: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    urgency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    exit_conditions: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    sector: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)

    account_type: Mapped[str] = mapped_column(String(10), nullable=False, default="INVEST")
    approved_by: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    approved_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        nullable=True,
        comment="When the plan reached a terminal status"
    )

    __table_args__ = (
        Index("ix_trade_plans_status_expires", "status", "expires_at"),
        Index("ix_trade_plans_symbol_status", "symbol", "status"),
    )

    def __repr__(self) -> str:
        return f"<TradePlan(id={self.id}, symbol={self.symbol}, side={self.side}, status={self.status})>"


class Position(Base):
    """
    Live holding. At most one row per symbol.
    """

    __tablename__ = "positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    ticker: Mapped[str] = mapped_column(String(40), nullable=False)
    shares: Mapped[float] = mapped_column(Float, nullable=False)
    entry_price: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        comment="Volume-weighted average entry price"
    )
    entry_time: Mapped[datetime] = mapped_column(nullable=False)

    current_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pnl: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pnl_pct: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    stop_loss: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    trailing_stop: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Never lowered once set"
    )
    take_profit: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    conviction: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    dca_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_invested: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    partial_exit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    stop_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    take_profit_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    exit_conditions: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    sector: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)
    account_type: Mapped[str] = mapped_column(String(10), nullable=False, default="INVEST")
    plan_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("trade_plans.id", ondelete="SET NULL"),
        nullable=True
    )

    updated_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        UniqueConstraint("symbol", name="uq_positions_symbol"),
    )

    @property
    def market_value(self) -> float:
        price = self.current_price if self.current_price is not None else self.entry_price
        return price * self.shares

    @property
    def effective_stop(self) -> Optional[float]:
        """Trailing stop when set, else the static stop."""
        if self.trailing_stop is not None:
            return self.trailing_stop
        return self.stop_loss

    def __repr__(self) -> str:
        return f"<Position(symbol={self.symbol}, shares={self.shares}, entry={self.entry_price})>"


class Trade(Base):
    """
    Fill ledger entry.

    BUY rows record entries and DCA rounds; SELL rows record full
    and partial exits with realized P&L.
    """

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    ticker: Mapped[str] = mapped_column(String(40), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)
    shares: Mapped[float] = mapped_column(Float, nullable=False)

    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    exit_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pnl: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pnl_pct: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    entry_time: Mapped[datetime] = mapped_column(nullable=False)
    exit_time: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    exit_reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    intended_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    slippage: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Intended price minus filled price"
    )

    conviction: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    model_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    dca_round: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_partial_exit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    plan_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    account_type: Mapped[str] = mapped_column(String(10), nullable=False, default="INVEST")

    __table_args__ = (
        Index("ix_trades_symbol_entry_time", "symbol", "entry_time"),
        Index("ix_trades_exit_time", "exit_time"),
    )

    @property
    def is_closed(self) -> bool:
        return self.exit_price is not None

    @property
    def is_loss(self) -> bool:
        if self.pnl is not None:
            return self.pnl < 0
        return (self.exit_price or 0.0) < self.entry_price

    def __repr__(self) -> str:
        return f"<Trade(id={self.id}, symbol={self.symbol}, side={self.side}, shares={self.shares})>"


class Order(Base):
    """
    Broker instruction record.

    Written before the broker is contacted and moved through the
    order state machine as the broker reports progress.
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)
    order_type: Mapped[str] = mapped_column(String(10), nullable=False, default="market")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    tag: Mapped[str] = mapped_column(String(20), nullable=False)

    requested_quantity: Mapped[float] = mapped_column(Float, nullable=False)
    requested_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    stop_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    broker_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    filled_quantity: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    filled_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    replaced_by_order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True,
        comment="Successor in a replacement chain"
    )

    account_type: Mapped[str] = mapped_column(String(10), nullable=False, default="INVEST")
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    filled_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        Index("ix_orders_status", "status"),
        Index("ix_orders_symbol_tag", "symbol", "tag"),
    )

    def __repr__(self) -> str:
        return f"<Order(id={self.id}, symbol={self.symbol}, tag={self.tag}, status={self.status})>"


class ConditionalOrder(Base):
    """Instruction that fires when a price, time or indicator condition is met."""

    __tablename__ = "conditional_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(20), nullable=False)
    trigger_condition: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    action: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")

    oco_group_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    linked_order_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="OCO sibling"
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    triggered_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("ix_conditional_orders_status", "status"),
        Index("ix_conditional_orders_oco_group", "oco_group_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ConditionalOrder(id={self.id}, symbol={self.symbol}, "
            f"trigger={self.trigger_type}, status={self.status})>"
        )


class PairLock(Base):
    """Time-bounded block on new entries for one symbol or, with '*', all symbols."""

    __tablename__ = "pair_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    lock_end: Mapped[datetime] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)
    side: Mapped[str] = mapped_column(String(5), nullable=False, default="*")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    __table_args__ = (
        Index("ix_pair_locks_symbol_active", "symbol", "active", "lock_end"),
    )

    def __repr__(self) -> str:
        return f"<PairLock(symbol={self.symbol}, reason={self.reason}, until={self.lock_end})>"


class AuditLogEntry(Base):
    """Append-only audit record for trades, risk decisions and control actions."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    event_type: Mapped[str] = mapped_column(String(16), nullable=False)
    category: Mapped[str] = mapped_column(String(16), nullable=False)
    symbol: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    severity: Mapped[str] = mapped_column(String(10), nullable=False, default="info")

    __table_args__ = (
        Index("ix_audit_log_timestamp", "timestamp"),
    )


class PortfolioSnapshot(Base):
    """Cash, value and rolling peak captured each time fresh broker figures arrive."""

    __tablename__ = "portfolio_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    taken_at: Mapped[datetime] = mapped_column(nullable=False)
    cash: Mapped[float] = mapped_column(Float, nullable=False)
    total_value: Mapped[float] = mapped_column(Float, nullable=False)
    peak_value: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        Index("ix_portfolio_snapshots_taken_at", "taken_at"),
    )
