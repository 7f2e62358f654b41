"""Signed REST adapters for Binance spot and USD-M futures."""

import hashlib
import hmac
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from core.config.settings import BinanceSettings
from core.monitoring.prometheus_metrics import GatewayMetrics
from core.trading.models import BrokerName, Fill, OrderAck, OrderStatus, Side, TradeRecord
from core.utils.exceptions import (
    AuthenticationError,
    BrokerAPIError,
    OrderError,
    OrderNotFoundError,
    RateLimitError,
)
from services.brokers.base import RestClient

ORDER_DOES_NOT_EXIST = -2013
AUTH_ERROR_CODES = {-2014, -2015}


def format_quantity(value: float) -> str:
    text = format(value, ".8f").rstrip("0").rstrip(".")
    return text or "0"


class BinanceRestClient(RestClient):
    """HMAC-SHA256 request signing and Binance error code mapping."""

    broker = BrokerName.BINANCE.value

    def __init__(
        self,
        settings: BinanceSettings,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[GatewayMetrics] = None,
    ):
        super().__init__(base_url, settings.request_timeout_seconds, http_client, metrics)
        self.settings = settings

    def _sign(self, params: Dict[str, Any]) -> str:
        payload = dict(params)
        payload["timestamp"] = int(time.time() * 1000)
        payload["recvWindow"] = self.settings.recv_window_ms
        query = urlencode(payload)
        signature = hmac.new(
            self.settings.api_secret.encode(), query.encode(), hashlib.sha256
        ).hexdigest()
        return f"{query}&signature={signature}"

    @property
    def _headers(self) -> Dict[str, str]:
        return {"X-MBX-APIKEY": self.settings.api_key}

    async def _signed(self, method: str, path: str, operation: str, **params: Any) -> Any:
        query = self._sign({k: v for k, v in params.items() if v is not None})
        response = await self._send(method, f"{path}?{query}", operation, headers=self._headers)
        return response.json()

    def _raise_for_response(self, response: httpx.Response, operation: str) -> None:
        body = self._json_or_empty(response)
        code = body.get("code")
        message = body.get("msg") or response.text
        status = response.status_code

        if code == ORDER_DOES_NOT_EXIST:
            raise OrderNotFoundError(
                message, broker=self.broker, status_code=status, api_error_code=str(code), api_response=body
            )
        if status in (418, 429):
            raise RateLimitError(
                message, broker=self.broker, status_code=status, api_error_code=str(code), api_response=body
            )
        if status == 401 or code in AUTH_ERROR_CODES:
            raise AuthenticationError(message, auth_provider=self.broker, details=body)
        if operation == "place_order" and 400 <= status < 500:
            raise OrderError(f"Order rejected: {message}", details=body)
        raise BrokerAPIError(
            message, broker=self.broker, status_code=status,
            api_error_code=str(code) if code is not None else None, api_response=body
        )


class BinanceSpotClient(BinanceRestClient):
    """Spot market orders; FULL responses embed fills."""

    def __init__(self, settings: BinanceSettings, http_client: Optional[httpx.AsyncClient] = None,
                 metrics: Optional[GatewayMetrics] = None):
        super().__init__(settings, settings.spot_base_url, http_client, metrics)

    async def place_market_order(self, instrument: str, side: Side, quantity: float) -> OrderAck:
        data = await self._signed(
            "POST", "/api/v3/order", "place_order",
            symbol=instrument, side=side.value, type="MARKET",
            quantity=format_quantity(quantity), newOrderRespType="FULL",
        )
        order_id = str(data["orderId"])
        fills = [
            Fill(qty=float(f["qty"]), price=float(f["price"]))
            for f in data.get("fills", [])
        ]
        return OrderAck(
            broker=BrokerName.BINANCE, instrument=instrument, order_id=order_id,
            reference_id=order_id, fills=fills, raw=data,
        )

    async def get_order(self, instrument: str, order_id: str) -> OrderStatus:
        data = await self._signed("GET", "/api/v3/order", "get_order", symbol=instrument, orderId=order_id)
        executed = float(data.get("executedQty", 0))
        quote = float(data.get("cummulativeQuoteQty", 0))
        return OrderStatus(
            order_id=str(data["orderId"]),
            status=data.get("status", ""),
            executed_qty=executed,
            cumulative_quote=quote,
            avg_price=quote / executed if executed else 0.0,
            reference_id=str(data["orderId"]),
        )

    async def get_trades(self, instrument: str, order_id: Optional[str] = None, limit: Optional[int] = None,
                         start_ms: Optional[int] = None, end_ms: Optional[int] = None) -> List[TradeRecord]:
        data = await self._signed(
            "GET", "/api/v3/myTrades", "get_trades",
            symbol=instrument, orderId=order_id, limit=limit, startTime=start_ms, endTime=end_ms,
        )
        return [
            TradeRecord(
                order_id=str(t["orderId"]),
                qty=float(t["qty"]),
                quote_qty=float(t["quoteQty"]),
                time_ms=int(t.get("time", 0)),
            )
            for t in data
        ]


class BinanceFuturesClient(BinanceRestClient):
    """USD-M futures orders, positions and user-data stream keys."""

    def __init__(self, settings: BinanceSettings, http_client: Optional[httpx.AsyncClient] = None,
                 metrics: Optional[GatewayMetrics] = None):
        super().__init__(settings, settings.futures_base_url, http_client, metrics)

    async def place_market_order(self, instrument: str, side: Side, quantity: float,
                                 reduce_only: bool = False) -> OrderAck:
        data = await self._signed(
            "POST", "/fapi/v1/order", "place_order",
            symbol=instrument, side=side.value, type="MARKET",
            quantity=format_quantity(quantity),
            reduceOnly="true" if reduce_only else None,
            newOrderRespType="RESULT",
        )
        order_id = str(data["orderId"])
        executed = float(data.get("executedQty", 0) or 0)
        avg_price = float(data.get("avgPrice", 0) or 0)
        fills = []
        if executed > 0 and avg_price > 0:
            quote = float(data.get("cumQuote", 0) or 0) or None
            fills.append(Fill(qty=executed, price=avg_price, quote_qty=quote))
        return OrderAck(
            broker=BrokerName.BINANCE, instrument=instrument, order_id=order_id,
            reference_id=order_id, fills=fills, raw=data,
        )

    async def get_order(self, instrument: str, order_id: str) -> OrderStatus:
        data = await self._signed("GET", "/fapi/v1/order", "get_order", symbol=instrument, orderId=order_id)
        return OrderStatus(
            order_id=str(data["orderId"]),
            status=data.get("status", ""),
            executed_qty=float(data.get("executedQty", 0) or 0),
            cumulative_quote=float(data.get("cumQuote", 0) or 0),
            avg_price=float(data.get("avgPrice", 0) or 0),
            reference_id=str(data["orderId"]),
        )

    async def get_trades(self, instrument: str, order_id: Optional[str] = None, limit: Optional[int] = None,
                         start_ms: Optional[int] = None, end_ms: Optional[int] = None) -> List[TradeRecord]:
        data = await self._signed(
            "GET", "/fapi/v1/userTrades", "get_trades",
            symbol=instrument, orderId=order_id, limit=limit, startTime=start_ms, endTime=end_ms,
        )
        return [
            TradeRecord(
                order_id=str(t["orderId"]),
                qty=float(t["qty"]),
                quote_qty=float(t["quoteQty"]),
                realized_pnl=float(t.get("realizedPnl", 0) or 0),
                time_ms=int(t.get("time", 0)),
            )
            for t in data
        ]

    async def get_position_risk(self) -> List[Dict[str, Any]]:
        return await self._signed("GET", "/fapi/v2/positionRisk", "get_positions")

    async def set_leverage(self, instrument: str, leverage: int) -> Dict[str, Any]:
        return await self._signed("POST", "/fapi/v1/leverage", "set_leverage", symbol=instrument, leverage=leverage)

    async def create_listen_key(self) -> str:
        response = await self._send("POST", "/fapi/v1/listenKey", "create_listen_key", headers=self._headers)
        return response.json()["listenKey"]

    async def keepalive_listen_key(self, listen_key: str) -> None:
        await self._send(
            "PUT", "/fapi/v1/listenKey", "keepalive_listen_key",
            headers=self._headers, params={"listenKey": listen_key},
        )
