"""
Risk Repositories.

============================================================
PURPOSE
============================================================
- PairLockRepository: time-bounded entry blocks. A lock whose
  lock_end has passed never counts as active, even before the
  maintenance sweep deactivates it.
- PortfolioSnapshotRepository: cash/value/peak history used for
  the rolling drawdown peak.

============================================================
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storage.models.enums import LockReason, LockSide
from storage.models.trading import PairLock, PortfolioSnapshot
from storage.repositories.base import BaseRepository


class PairLockRepository(BaseRepository[PairLock]):
    """Repository for pair locks."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, PairLock, "PairLockRepository")

    def create_lock(
        self,
        symbol: str,
        lock_end: datetime,
        reason: Any,
        now: datetime,
        side: Any = LockSide.ANY,
    ) -> PairLock:
        entity = PairLock(
            symbol=symbol,
            lock_end=lock_end,
            reason=self._validate_enum("reason", reason, LockReason),
            side=self._validate_enum("side", side, LockSide),
            active=True,
            created_at=now,
        )
        return self._add(entity)

    def get_active(self, now: datetime, symbol: Optional[str] = None) -> List[PairLock]:
        stmt = select(PairLock).where(PairLock.active.is_(True), PairLock.lock_end > now)
        if symbol is not None:
            stmt = stmt.where(PairLock.symbol == symbol)
        return self._execute_query(stmt.order_by(PairLock.lock_end))

    def get_expired_active(self, now: datetime) -> List[PairLock]:
        return self._execute_query(
            select(PairLock).where(PairLock.active.is_(True), PairLock.lock_end <= now)
        )

    def deactivate(self, locks: List[PairLock]) -> int:
        for lock in locks:
            lock.active = False
        self._flush()
        return len(locks)


class PortfolioSnapshotRepository(BaseRepository[PortfolioSnapshot]):
    """Repository for portfolio snapshots."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, PortfolioSnapshot, "PortfolioSnapshotRepository")

    def record_snapshot(
        self,
        taken_at: datetime,
        cash: float,
        total_value: float,
        peak_value: float,
    ) -> PortfolioSnapshot:
        return self._add(PortfolioSnapshot(
            taken_at=taken_at,
            cash=cash,
            total_value=total_value,
            peak_value=peak_value,
        ))

    def get_latest(self) -> Optional[PortfolioSnapshot]:
        return self._execute_scalar(
            select(PortfolioSnapshot).order_by(desc(PortfolioSnapshot.taken_at), desc(PortfolioSnapshot.id))
        )

    def get_peak_value(self) -> float:
        """Highest recorded portfolio value, 0.0 with no history."""
        try:
            value = self._session.execute(select(func.max(PortfolioSnapshot.peak_value))).scalar()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "get_peak_value")
            raise
        return float(value or 0.0)
