"""
Monitoring - Audit Logger.

============================================================
PURPOSE
============================================================
Audit hook invoked on every trade, risk decision and control
action. Each entry is persisted to ``audit_log`` and mirrored to
the Python logger at the matching level.

SAFETY REQUIREMENTS:
- Auditing never crashes the engine: a persistence failure is
  logged and swallowed
- Details are stored as JSON; non-serializable values are
  stringified

============================================================
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from core.clock import ClockProtocol, SystemClock
from storage.models.enums import AuditCategory, AuditEventType, AuditSeverity
from storage.models.trading import AuditLogEntry
from storage.repositories.exceptions import RepositoryException
from storage.repositories.monitoring import AuditLogRepository


logger = logging.getLogger(__name__)


_LOG_LEVELS = {
    AuditSeverity.INFO: logging.INFO,
    AuditSeverity.WARN: logging.WARNING,
    AuditSeverity.ERROR: logging.ERROR,
    AuditSeverity.CRITICAL: logging.CRITICAL,
}


def _to_json_safe(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if details is None:
        return None
    return json.loads(json.dumps(details, default=str))


class AuditLogger:
    """
    Persistent audit trail.

    Convenience methods set the event type and category:

    - log_trade    -> TRADE / EXECUTION
    - log_signal   -> SIGNAL / ANALYSIS
    - log_risk     -> RISK / RISK
    - log_control  -> CONTROL / USER
    - log_error    -> ERROR / SYSTEM
    """

    def __init__(self, session: Session, clock: Optional[ClockProtocol] = None):
        self._repo = AuditLogRepository(session)
        self._clock = clock or SystemClock()

    def log(
        self,
        event_type: AuditEventType,
        category: AuditCategory,
        summary: str,
        symbol: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> Optional[AuditLogEntry]:
        severity = AuditSeverity(severity)
        prefix = f"[AUDIT:{AuditEventType(event_type).value}]"
        target = f" {symbol}" if symbol else ""
        logger.log(_LOG_LEVELS[severity], f"{prefix}{target} {summary}")

        try:
            entry = self._repo.record_entry(
                timestamp=self._clock.now(),
                event_type=event_type,
                category=category,
                summary=summary,
                symbol=symbol,
                details=_to_json_safe(details),
                severity=severity,
            )
            self._repo.commit()
            return entry
        except RepositoryException as e:
            logger.error(f"Failed to persist audit entry '{summary}': {e}")
            return None

    def log_trade(
        self,
        symbol: str,
        summary: str,
        details: Optional[Dict[str, Any]] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> Optional[AuditLogEntry]:
        return self.log(AuditEventType.TRADE, AuditCategory.EXECUTION, summary, symbol, details, severity)

    def log_signal(
        self,
        symbol: str,
        summary: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLogEntry]:
        return self.log(AuditEventType.SIGNAL, AuditCategory.ANALYSIS, summary, symbol, details)

    def log_risk(
        self,
        summary: str,
        symbol: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: AuditSeverity = AuditSeverity.WARN,
    ) -> Optional[AuditLogEntry]:
        return self.log(AuditEventType.RISK, AuditCategory.RISK, summary, symbol, details, severity)

    def log_control(
        self,
        action: str,
        by: str,
        symbol: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> Optional[AuditLogEntry]:
        payload = dict(details or {})
        payload["by"] = by
        return self.log(
            AuditEventType.CONTROL,
            AuditCategory.USER,
            f"{action} by {by}",
            symbol,
            payload,
            severity,
        )

    def log_error(
        self,
        summary: str,
        symbol: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: AuditSeverity = AuditSeverity.ERROR,
    ) -> Optional[AuditLogEntry]:
        return self.log(AuditEventType.ERROR, AuditCategory.SYSTEM, summary, symbol, details, severity)

    def get_entries(
        self,
        since: Optional[datetime] = None,
        limit: int = 100,
        event_type: Optional[AuditEventType] = None,
    ) -> List[AuditLogEntry]:
        return self._repo.list_entries(since=since, limit=limit, event_type=event_type)
