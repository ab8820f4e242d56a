"""
Monitoring - Broadcast Hub.

============================================================
PURPOSE
============================================================
Fire-and-forget event fan-out for dashboards and notifiers.

EVENT TYPES:
- signal: a scoring signal was received
- plan: a trade plan was created or changed status
- trade: a fill was recorded
- position: a position was opened, changed or closed
- bot_status: pause / resume / emergency stop

SAFETY REQUIREMENTS:
- broadcast() never blocks and never raises
- Async subscribers are scheduled as tasks, never awaited by
  the engine
- A subscriber exception is logged and isolated

============================================================
"""

import asyncio
import inspect
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import aiohttp

from core.clock import ClockProtocol, SystemClock


logger = logging.getLogger(__name__)


class BroadcastEventType(str, Enum):
    SIGNAL = "signal"
    PLAN = "plan"
    TRADE = "trade"
    POSITION = "position"
    BOT_STATUS = "bot_status"


@dataclass
class BroadcastEvent:
    """One event delivered to subscribers."""

    event_type: BroadcastEventType
    payload: Dict[str, Any]
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


Subscriber = Callable[[BroadcastEvent], Any]


class BroadcastHub:
    """
    In-process publish/subscribe hub.

    Subscribers may be plain callables or coroutine functions.
    """

    def __init__(self, clock: Optional[ClockProtocol] = None, history_size: int = 100):
        self._clock = clock or SystemClock()
        self._subscribers: List[Subscriber] = []
        self._history: Deque[BroadcastEvent] = deque(maxlen=history_size)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def broadcast(self, event_type: BroadcastEventType, payload: Dict[str, Any]) -> None:
        event = BroadcastEvent(
            event_type=BroadcastEventType(event_type),
            payload=payload,
            timestamp=self._clock.now(),
        )
        self._history.append(event)

        for callback in list(self._subscribers):
            if inspect.iscoroutinefunction(callback):
                self._schedule(callback, event)
                continue
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Broadcast subscriber {callback!r} failed on {event.event_type.value}: {e}")

    def _schedule(self, callback: Subscriber, event: BroadcastEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, dropping async delivery of {event.event_type.value}")
            return

        task = loop.create_task(self._deliver(callback, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, callback: Subscriber, event: BroadcastEvent) -> None:
        try:
            await callback(event)
        except Exception as e:
            logger.warning(f"Async broadcast subscriber {callback!r} failed on {event.event_type.value}: {e}")

    async def drain(self) -> None:
        """Wait for in-flight async deliveries (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_history(self, limit: int = 20) -> List[BroadcastEvent]:
        return list(self._history)[-limit:]


# ============================================================
# WEBHOOK SUBSCRIBER
# ============================================================

@dataclass
class WebhookConfig:
    """Configuration for pushing events to an HTTP endpoint."""

    url: str = ""
    """Target URL; empty disables delivery."""

    timeout_seconds: float = 5.0
    """Per-request timeout."""

    event_types: List[BroadcastEventType] = field(
        default_factory=lambda: list(BroadcastEventType)
    )
    """Event types forwarded to the endpoint."""

    @classmethod
    def from_env(cls) -> "WebhookConfig":
        return cls(url=os.getenv("BROADCAST_WEBHOOK_URL", ""))


class WebhookSubscriber:
    """Async subscriber that POSTs each event as JSON."""

    def __init__(self, config: WebhookConfig):
        self._config = config
        self._session: Optional[aiohttp.ClientSession] = None
        self.sent_count = 0
        self.failed_count = 0

    @property
    def is_configured(self) -> bool:
        return bool(self._config.url)

    async def __call__(self, event: BroadcastEvent) -> None:
        if not self.is_configured or event.event_type not in self._config.event_types:
            return

        try:
            if self._session is None:
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self._config.timeout_seconds)
                )
            async with self._session.post(self._config.url, json=event.to_dict()) as response:
                if response.status >= 400:
                    body = await response.text()
                    self.failed_count += 1
                    logger.error(f"Webhook returned {response.status}: {body[:200]}")
                    return
            self.sent_count += 1
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.failed_count += 1
            logger.error(f"Webhook delivery failed: {e}")

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
