"""
Position and Trade Repositories.

============================================================
PURPOSE
============================================================
- PositionRepository: live holdings, at most one row per symbol
  (UNIQUE constraint plus a pre-insert check)
- TradeRepository: append-only fill ledger; BUY rows for entries
  and DCA rounds, SELL rows for full and partial exits

============================================================
"""

from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storage.models.enums import AccountType, TradeSide
from storage.models.trading import Position, Trade
from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import DuplicateRecordError


class PositionRepository(BaseRepository[Position]):
    """Repository for live positions."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, Position, "PositionRepository")

    def create_position(self, **fields: Any) -> Position:
        """
        Persist a new position.

        Raises:
            DuplicateRecordError: the symbol already has a live position
        """
        symbol = fields["symbol"]
        if self.get_by_symbol(symbol) is not None:
            raise DuplicateRecordError(self._repository_name, "symbol", symbol)

        fields["account_type"] = self._validate_enum(
            "account_type", fields.get("account_type", AccountType.INVEST), AccountType
        )
        fields.setdefault("updated_at", fields.get("entry_time"))
        return self._add(Position(**fields), {"field": "symbol", "value": symbol})

    def get_by_symbol(self, symbol: str) -> Optional[Position]:
        return self._execute_scalar(select(Position).where(Position.symbol == symbol))

    def get_all(self) -> List[Position]:
        return self._execute_query(select(Position).order_by(Position.entry_time))

    def count_open(self) -> int:
        return self._count()

    def update_position(self, position: Position, now: datetime, **values: Any) -> Position:
        for key, value in values.items():
            setattr(position, key, value)
        position.updated_at = now
        self._flush()
        return position

    def delete_position(self, position: Position) -> None:
        self._logger.info(f"Removing position {position.symbol}")
        self._delete(position)


class TradeRepository(BaseRepository[Trade]):
    """Repository for the fill ledger."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, Trade, "TradeRepository")

    def record_trade(self, **fields: Any) -> Trade:
        fields["side"] = self._validate_enum("side", fields.get("side"), TradeSide)
        fields["account_type"] = self._validate_enum(
            "account_type", fields.get("account_type", AccountType.INVEST), AccountType
        )
        return self._add(Trade(**fields))

    def get_entry_trade(self, symbol: str) -> Optional[Trade]:
        """Most recent initial (non-DCA) BUY for ``symbol``."""
        stmt = (
            select(Trade)
            .where(
                Trade.symbol == symbol,
                Trade.side == TradeSide.BUY.value,
                Trade.dca_round == 0,
            )
            .order_by(desc(Trade.entry_time), desc(Trade.id))
        )
        return self._execute_scalar(stmt)

    def get_last_buy(self, symbol: str) -> Optional[Trade]:
        """Most recent BUY (entry or DCA round) for ``symbol``."""
        stmt = (
            select(Trade)
            .where(Trade.symbol == symbol, Trade.side == TradeSide.BUY.value)
            .order_by(desc(Trade.entry_time), desc(Trade.id))
        )
        return self._execute_scalar(stmt)

    def get_closed_trades(
        self,
        since: Optional[datetime] = None,
        symbol: Optional[str] = None,
        limit: Optional[int] = None,
        include_partial: bool = False,
    ) -> List[Trade]:
        """Closed SELL rows, most recent first."""
        stmt = select(Trade).where(
            Trade.side == TradeSide.SELL.value,
            Trade.exit_time.is_not(None),
        )
        if not include_partial:
            stmt = stmt.where(Trade.is_partial_exit.is_(False))
        if since is not None:
            stmt = stmt.where(Trade.exit_time >= since)
        if symbol is not None:
            stmt = stmt.where(Trade.symbol == symbol)
        stmt = stmt.order_by(desc(Trade.exit_time), desc(Trade.id))
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._execute_query(stmt)

    def realized_pnl_since(self, since: datetime) -> float:
        """Sum of realized pnl on exits (full and partial) since ``since``."""
        stmt = select(func.coalesce(func.sum(Trade.pnl), 0.0)).where(
            Trade.side == TradeSide.SELL.value,
            Trade.exit_time >= since,
        )
        try:
            return float(self._session.execute(stmt).scalar() or 0.0)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "realized_pnl_since")
            raise

    def get_recent(self, limit: int = 50) -> List[Trade]:
        stmt = select(Trade).order_by(desc(Trade.entry_time), desc(Trade.id)).limit(limit)
        return self._execute_query(stmt)
