"""
Execution Engine - HTTP Broker Adapter.

============================================================
PURPOSE
============================================================
REST broker client over aiohttp.

ENDPOINTS:
- POST   /equity/orders/market | limit | stop
- GET    /equity/orders
- GET    /equity/orders/{id}
- DELETE /equity/orders/{id}
- GET    /equity/account/cash
- GET    /equity/portfolio

Sell orders are sent with a negative quantity. Credentials are
sent as HTTP Basic auth built from the API key.

============================================================
"""

import asyncio
import base64
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from core.exceptions import BrokerError, InvalidConfigError
from storage.models.enums import OrderType, TradeSide
from execution_engine.errors import map_http_status
from execution_engine.adapters.base import (
    AccountCash,
    BrokerAdapter,
    BrokerPosition,
    CancelOrderRequest,
    CancelOrderResponse,
    QueryOrderRequest,
    QueryOrderResponse,
    SubmitOrderRequest,
    SubmitOrderResponse,
)


logger = logging.getLogger(__name__)


@dataclass
class HttpBrokerConfig:
    """HTTP broker connection settings."""

    base_url: str
    """API root, e.g. https://demo.example-broker.com/api/v0"""

    api_key: str = ""
    """API key, or "key:secret"."""

    timeout_seconds: float = 10.0
    """Total timeout per request."""

    @classmethod
    def from_env(cls) -> "HttpBrokerConfig":
        return cls(
            base_url=os.environ.get("BROKER_BASE_URL", ""),
            api_key=os.environ.get("BROKER_API_KEY", ""),
            timeout_seconds=float(os.environ.get("BROKER_TIMEOUT_SECONDS", "10")),
        )

    def validate(self) -> None:
        if not self.base_url:
            raise InvalidConfigError("base_url", self.base_url, "must be set")
        if self.timeout_seconds <= 0:
            raise InvalidConfigError("timeout_seconds", self.timeout_seconds, "must be positive")


class HttpBrokerAdapter(BrokerAdapter):
    """Broker adapter for a REST equity broker API."""

    ORDER_PATHS = {
        OrderType.MARKET: "/equity/orders/market",
        OrderType.LIMIT: "/equity/orders/limit",
        OrderType.STOP: "/equity/orders/stop",
    }

    def __init__(self, config: HttpBrokerConfig):
        config.validate()
        self._config = config
        self._base_url = config.base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def broker_id(self) -> str:
        return "http"

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        if self._session is not None:
            await self.disconnect()

        timeout = aiohttp.ClientTimeout(total=self._config.timeout_seconds)
        self._session = aiohttp.ClientSession(timeout=timeout, headers=self._auth_headers())
        logger.info(f"Connected to broker at {self._base_url}")

    async def disconnect(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("Disconnected from broker")

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def submit_order(self, request: SubmitOrderRequest) -> SubmitOrderResponse:
        quantity = request.quantity if request.side == TradeSide.BUY else -request.quantity
        body: Dict[str, Any] = {"ticker": request.symbol, "quantity": float(quantity)}

        if request.order_type == OrderType.LIMIT:
            body["limitPrice"] = float(request.price)
            body["timeValidity"] = request.time_validity
        elif request.order_type == OrderType.STOP:
            body["stopPrice"] = float(request.stop_price)
            body["timeValidity"] = request.time_validity

        try:
            data = await self._request("POST", self.ORDER_PATHS[request.order_type], json=body)
        except BrokerError as e:
            return SubmitOrderResponse(
                success=False,
                status="REJECTED",
                error_code=e.error_code,
                error_message=str(e),
            )

        return SubmitOrderResponse(
            success=True,
            broker_order_id=str(data["id"]),
            status=data.get("status"),
            filled_quantity=abs(_decimal(data.get("filledQuantity")) or Decimal("0")),
            average_price=_average_price(data),
            raw_response=data,
        )

    async def query_order(self, request: QueryOrderRequest) -> QueryOrderResponse:
        try:
            data = await self._request("GET", f"/equity/orders/{request.broker_order_id}")
        except BrokerError as e:
            if e.error_code == "BRK_ORDER_NOT_FOUND":
                return QueryOrderResponse(found=False, error_code=e.error_code, error_message=str(e))
            raise
        return _parse_order(data)

    async def cancel_order(self, request: CancelOrderRequest) -> CancelOrderResponse:
        try:
            await self._request("DELETE", f"/equity/orders/{request.broker_order_id}")
        except BrokerError as e:
            return CancelOrderResponse(
                success=False,
                broker_order_id=request.broker_order_id,
                error_code=e.error_code,
                error_message=str(e),
            )
        return CancelOrderResponse(success=True, broker_order_id=request.broker_order_id, status="CANCELLED")

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[QueryOrderResponse]:
        data = await self._request("GET", "/equity/orders")
        orders = [_parse_order(item) for item in data or []]
        if symbol is not None:
            orders = [o for o in orders if o.symbol == symbol]
        return orders

    # --------------------------------------------------------
    # ACCOUNT
    # --------------------------------------------------------

    async def get_account_cash(self) -> AccountCash:
        data = await self._request("GET", "/equity/account/cash")
        return AccountCash(
            free=_decimal(data.get("free")) or Decimal("0"),
            total=_decimal(data.get("total")) or Decimal("0"),
            invested=_decimal(data.get("invested")) or Decimal("0"),
        )

    async def get_positions(self) -> List[BrokerPosition]:
        data = await self._request("GET", "/equity/portfolio")
        return [
            BrokerPosition(
                symbol=item["ticker"],
                quantity=_decimal(item.get("quantity")) or Decimal("0"),
                average_price=_decimal(item.get("averagePrice")) or Decimal("0"),
                current_price=_decimal(item.get("currentPrice")),
            )
            for item in data or []
        ]

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    async def get_current_price(self, symbol: str) -> Optional[Decimal]:
        """Current price of a held instrument; None when not held."""
        for position in await self.get_positions():
            if position.symbol == symbol:
                return position.current_price
        return None

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        raw = self._config.api_key if ":" in self._config.api_key else f"{self._config.api_key}:"
        credentials = base64.b64encode(raw.encode()).decode()
        return {
            "Authorization": f"Basic {credentials}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if not self._session:
            raise BrokerError("Not connected", broker=self.broker_id, endpoint=path)

        url = f"{self._base_url}{path}"
        logger.debug(f"Broker request {method} {path}")

        try:
            async with self._session.request(method, url, json=json) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise BrokerError(
                        f"Broker API error ({response.status}): {text}",
                        broker=self.broker_id,
                        error_code=map_http_status(response.status),
                        endpoint=path,
                    )

                if response.content_length == 0:
                    return None
                return await response.json(content_type=None)

        except aiohttp.ClientError as e:
            raise BrokerError(
                f"Network error: {e}",
                broker=self.broker_id,
                error_code="BRK_NETWORK",
                endpoint=path,
                cause=e,
            )
        except asyncio.TimeoutError as e:
            raise BrokerError(
                "Request timeout",
                broker=self.broker_id,
                error_code="BRK_TIMEOUT",
                endpoint=path,
                cause=e,
            )


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _average_price(data: Dict[str, Any]) -> Optional[Decimal]:
    filled_quantity = _decimal(data.get("filledQuantity"))
    filled_value = _decimal(data.get("filledValue"))
    if filled_quantity and filled_value is not None:
        return abs(filled_value / filled_quantity)
    return None


def _parse_order(data: Dict[str, Any]) -> QueryOrderResponse:
    quantity = _decimal(data.get("quantity")) or Decimal("0")
    order_type = str(data.get("type", "MARKET")).lower()
    created = data.get("creationTime")
    return QueryOrderResponse(
        found=True,
        broker_order_id=str(data["id"]),
        symbol=data.get("ticker", ""),
        side=TradeSide.BUY if quantity >= 0 else TradeSide.SELL,
        order_type=OrderType(order_type) if order_type in {t.value for t in OrderType} else None,
        status=data.get("status"),
        quantity=abs(quantity),
        filled_quantity=abs(_decimal(data.get("filledQuantity")) or Decimal("0")),
        price=_decimal(data.get("limitPrice")),
        stop_price=_decimal(data.get("stopPrice")),
        average_price=_average_price(data),
        created_at=datetime.fromisoformat(created.replace("Z", "+00:00")) if created else None,
    )
