"""
Audit Log Repository.

============================================================
PURPOSE
============================================================
Append-only persistence of the audit trail: every trade, risk
decision and control action, with a severity level.

============================================================
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from storage.models.enums import AuditCategory, AuditEventType, AuditSeverity
from storage.models.trading import AuditLogEntry
from storage.repositories.base import BaseRepository


class AuditLogRepository(BaseRepository[AuditLogEntry]):
    """Repository for audit entries. Entries are never updated."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, AuditLogEntry, "AuditLogRepository")

    def record_entry(
        self,
        timestamp: datetime,
        event_type: Any,
        category: Any,
        summary: str,
        symbol: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Any = AuditSeverity.INFO,
    ) -> AuditLogEntry:
        entity = AuditLogEntry(
            timestamp=timestamp,
            event_type=self._validate_enum("event_type", event_type, AuditEventType),
            category=self._validate_enum("category", category, AuditCategory),
            symbol=symbol,
            summary=summary,
            details=details,
            severity=self._validate_enum("severity", severity, AuditSeverity),
        )
        return self._add(entity)

    def list_entries(
        self,
        since: Optional[datetime] = None,
        limit: int = 100,
        event_type: Any = None,
        symbol: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        stmt = select(AuditLogEntry)
        if since is not None:
            stmt = stmt.where(AuditLogEntry.timestamp >= since)
        if event_type is not None:
            stmt = stmt.where(
                AuditLogEntry.event_type == self._validate_enum("event_type", event_type, AuditEventType)
            )
        if symbol is not None:
            stmt = stmt.where(AuditLogEntry.symbol == symbol)
        stmt = stmt.order_by(desc(AuditLogEntry.timestamp), desc(AuditLogEntry.id)).limit(limit)
        return self._execute_query(stmt)
