"""
Tests for Monitoring.

============================================================
PURPOSE
============================================================
Audit trail persistence and broadcast fan-out.

TEST PRINCIPLES:
- Audit writes never raise into trading code
- broadcast() never raises, whatever subscribers do

============================================================
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from monitoring.audit import AuditLogger
from monitoring.broadcast import (
    BroadcastEvent,
    BroadcastEventType,
    BroadcastHub,
    WebhookConfig,
    WebhookSubscriber,
)
from storage.models.enums import AuditEventType, AuditSeverity
from storage.repositories import RepositoryException


# =============================================================
# TEST: AUDIT LOGGER
# =============================================================

class TestAuditLogger:
    """Tests for AuditLogger."""

    def test_log_trade(self, session, clock):
        """Trade entries carry symbol, details and timestamp."""
        audit = AuditLogger(session, clock)
        entry = audit.log_trade("AAPL", "BUY AAPL filled", {"shares": 10})

        assert entry.event_type == AuditEventType.TRADE.value
        assert entry.symbol == "AAPL"
        assert entry.details == {"shares": 10}
        assert entry.timestamp == clock.now()

    def test_control_records_actor(self, session, clock):
        """Control entries record who acted."""
        audit = AuditLogger(session, clock)
        entry = audit.log_control("Pause", "alice")

        assert entry.summary == "Pause by alice"
        assert entry.details["by"] == "alice"

    def test_risk_defaults_to_warn(self, session, clock):
        """Risk events default to WARN severity."""
        entry = AuditLogger(session, clock).log_risk("Daily loss limit reached")
        assert entry.severity == AuditSeverity.WARN.value

    def test_details_made_json_safe(self, session, clock):
        """Non-JSON values are stringified."""
        entry = AuditLogger(session, clock).log_error("Broker down", details={"at": clock.now()})
        assert entry.details["at"] == str(clock.now())

    def test_filter_and_order(self, session, clock):
        """Entries come back newest first, filtered by type."""
        audit = AuditLogger(session, clock)
        audit.log_trade("AAPL", "first")
        clock.advance(minutes=1)
        audit.log_signal("MSFT", "signal")
        clock.advance(minutes=1)
        audit.log_trade("TSLA", "second")

        trades = audit.get_entries(event_type=AuditEventType.TRADE)

        assert [e.summary for e in trades] == ["second", "first"]
        assert len(audit.get_entries(limit=1)) == 1

    def test_persistence_failure_swallowed(self, session, clock):
        """A failed write is logged, never raised."""
        audit = AuditLogger(session, clock)
        audit._repo = MagicMock()
        audit._repo.record_entry.side_effect = RepositoryException("disk full", "AuditLogRepository", "add")

        assert audit.log_trade("AAPL", "lost") is None


# =============================================================
# TEST: BROADCAST HUB
# =============================================================

class TestBroadcastHub:
    """Tests for BroadcastHub."""

    def test_sync_subscriber(self, clock):
        """Plain callables are called inline."""
        hub = BroadcastHub(clock)
        received = []
        hub.subscribe(received.append)

        hub.broadcast(BroadcastEventType.TRADE, {"symbol": "AAPL"})

        assert len(received) == 1
        assert received[0].to_dict()["type"] == "trade"

    def test_failing_subscriber_isolated(self, clock):
        """One failing subscriber does not stop the others."""
        hub = BroadcastHub(clock)
        received = []
        hub.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        hub.subscribe(received.append)

        hub.broadcast(BroadcastEventType.PLAN, {})

        assert len(received) == 1

    def test_unsubscribe(self, clock):
        """The handle returned by subscribe removes the callback."""
        hub = BroadcastHub(clock)
        unsubscribe = hub.subscribe(lambda event: None)
        assert hub.subscriber_count == 1

        unsubscribe()
        assert hub.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_async_subscriber_scheduled(self, clock):
        """Coroutine subscribers run as tasks."""
        hub = BroadcastHub(clock)
        received = []

        async def subscriber(event: BroadcastEvent):
            received.append(event.event_type)

        async def broken(event: BroadcastEvent):
            raise RuntimeError("webhook down")

        hub.subscribe(subscriber)
        hub.subscribe(broken)
        hub.broadcast(BroadcastEventType.BOT_STATUS, {"paused": True})
        await hub.drain()

        assert received == [BroadcastEventType.BOT_STATUS]

    def test_async_subscriber_without_loop(self, clock):
        """Without a running loop async delivery is dropped quietly."""
        hub = BroadcastHub(clock)
        subscriber = AsyncMock()
        hub.subscribe(subscriber)

        hub.broadcast(BroadcastEventType.SIGNAL, {})

        subscriber.assert_not_awaited()

    def test_history_bounded(self, clock):
        """History keeps the newest events only."""
        hub = BroadcastHub(clock, history_size=3)
        for i in range(5):
            hub.broadcast(BroadcastEventType.POSITION, {"i": i})

        assert [e.payload["i"] for e in hub.get_history()] == [2, 3, 4]


# =============================================================
# TEST: WEBHOOK
# =============================================================

class TestWebhookSubscriber:
    """Tests for WebhookSubscriber."""

    @pytest.mark.asyncio
    async def test_unconfigured_is_noop(self, clock):
        """No URL means nothing is sent."""
        subscriber = WebhookSubscriber(WebhookConfig())
        event = BroadcastEvent(BroadcastEventType.TRADE, {}, clock.now())

        await subscriber(event)

        assert not subscriber.is_configured
        assert subscriber.sent_count == 0

    def test_from_env(self, monkeypatch):
        """The URL comes from the environment."""
        monkeypatch.setenv("BROADCAST_WEBHOOK_URL", "http://localhost:9000/events")
        assert WebhookConfig.from_env().url == "http://localhost:9000/events"
