"""
Risk Management - Pair Lock Manager.

============================================================
PURPOSE
============================================================
Time-bounded blocks on new entries for a single symbol or,
with the global symbol '*', for every symbol.

RULES:
- A lock past its lock_end never blocks, even before the
  maintenance sweep deactivates it
- Symbol locks are checked before global locks
- Side '*' on either the lock or the query matches any side
- Manual unlocks are audited

============================================================
"""

import logging
from datetime import timedelta
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from core.clock import ClockProtocol, SystemClock
from monitoring.audit import AuditLogger
from storage.models.enums import GLOBAL_LOCK_SYMBOL, LockSide
from storage.models.trading import PairLock
from storage.repositories import PairLockRepository


logger = logging.getLogger(__name__)


def _side_matches(lock_side: str, side: str) -> bool:
    any_side = LockSide.ANY.value
    return lock_side == any_side or side == any_side or lock_side == side


class PairLockManager:
    """Creates, checks and expires pair locks."""

    def __init__(
        self,
        session: Session,
        clock: Optional[ClockProtocol] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self._repo = PairLockRepository(session)
        self._clock = clock or SystemClock()
        self._audit = audit or AuditLogger(session, self._clock)

    def lock_pair(
        self,
        symbol: str,
        minutes: float,
        reason: Any,
        side: Any = LockSide.ANY,
    ) -> PairLock:
        now = self._clock.now()
        lock = self._repo.create_lock(
            symbol=symbol,
            lock_end=now + timedelta(minutes=minutes),
            reason=reason,
            now=now,
            side=side,
        )
        self._repo.commit()
        logger.info(f"Locked {symbol} for {minutes:g} min ({lock.reason}, side={lock.side})")
        return lock

    def lock_global(self, minutes: float, reason: Any) -> PairLock:
        return self.lock_pair(GLOBAL_LOCK_SYMBOL, minutes, reason)

    def is_pair_locked(self, symbol: str, side: str = LockSide.ANY.value) -> Optional[PairLock]:
        """
        Active lock blocking ``symbol`` on ``side``, else None.

        Symbol locks win over global locks when both apply.
        """
        side = LockSide(side).value
        now = self._clock.now()
        for lock in self._repo.get_active(now, symbol=symbol):
            if _side_matches(lock.side, side):
                return lock
        if symbol != GLOBAL_LOCK_SYMBOL:
            for lock in self._repo.get_active(now, symbol=GLOBAL_LOCK_SYMBOL):
                if _side_matches(lock.side, side):
                    return lock
        return None

    def is_global_locked(self) -> Optional[PairLock]:
        locks = self._repo.get_active(self._clock.now(), symbol=GLOBAL_LOCK_SYMBOL)
        return locks[0] if locks else None

    def get_active_locks(self, symbol: Optional[str] = None) -> List[PairLock]:
        return self._repo.get_active(self._clock.now(), symbol=symbol)

    def unlock_pair(self, symbol: str, by: str) -> int:
        """Deactivate every active lock on ``symbol``. Returns the count removed."""
        locks = self._repo.get_active(self._clock.now(), symbol=symbol)
        if not locks:
            return 0
        count = self._repo.deactivate(locks)
        self._repo.commit()
        self._audit.log_control(
            "Pair unlocked",
            by,
            symbol=symbol,
            details={"locks_removed": count, "reasons": [lock.reason for lock in locks]},
        )
        return count

    def cleanup_expired(self) -> int:
        """Deactivate locks past their end time. Safe to run repeatedly."""
        expired = self._repo.get_expired_active(self._clock.now())
        if not expired:
            return 0
        count = self._repo.deactivate(expired)
        self._repo.commit()
        logger.info(f"Cleaned up {count} expired pair lock(s)")
        return count


