"""
Monitoring Package.

============================================================
PURPOSE
============================================================
Observational hooks of the trading engine.

PRINCIPLES:
1. OBSERVATIONAL - never mutates trading state
2. RESILIENT - a failing hook never blocks or crashes trading
3. TRACEABLE - every trade, risk decision and control action
   leaves an audit entry

============================================================
COMPONENTS
============================================================
- audit: AuditLogger (persistent audit trail)
- broadcast: BroadcastHub, WebhookSubscriber (fire-and-forget)

============================================================
"""

from monitoring.audit import AuditLogger
from monitoring.broadcast import (
    BroadcastEvent,
    BroadcastEventType,
    BroadcastHub,
    WebhookConfig,
    WebhookSubscriber,
)


__all__ = [
    "AuditLogger",
    "BroadcastEvent",
    "BroadcastEventType",
    "BroadcastHub",
    "WebhookConfig",
    "WebhookSubscriber",
]
