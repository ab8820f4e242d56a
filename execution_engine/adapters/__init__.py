"""
Execution Engine - Adapters Package.

============================================================
PURPOSE
============================================================
Broker adapter implementations.

AVAILABLE ADAPTERS:
- MockBrokerAdapter: tests and paper runs
- HttpBrokerAdapter: REST broker API via aiohttp

============================================================
"""

from .base import (
    AccountCash,
    BrokerAdapter,
    BrokerPosition,
    CancelOrderRequest,
    CancelOrderResponse,
    QueryOrderRequest,
    QueryOrderResponse,
    SubmitOrderRequest,
    SubmitOrderResponse,
    is_rejection,
    map_broker_status_to_order_status,
)
from .http import HttpBrokerAdapter, HttpBrokerConfig
from .mock import MockBrokerAdapter, MockConfig, MockOrder


__all__ = [
    "AccountCash",
    "BrokerAdapter",
    "BrokerPosition",
    "CancelOrderRequest",
    "CancelOrderResponse",
    "QueryOrderRequest",
    "QueryOrderResponse",
    "SubmitOrderRequest",
    "SubmitOrderResponse",
    "is_rejection",
    "map_broker_status_to_order_status",
    "HttpBrokerAdapter",
    "HttpBrokerConfig",
    "MockBrokerAdapter",
    "MockConfig",
    "MockOrder",
]
