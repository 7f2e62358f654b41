"""Capital.com CFD REST adapter."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

import httpx

from core.config.settings import CapitalSettings
from core.logging import get_logger
from core.monitoring.prometheus_metrics import GatewayMetrics
from core.trading.models import BrokerName, OrderAck, OrderStatus, Side, TradeRecord
from core.utils.exceptions import (
    AuthenticationError,
    BrokerAPIError,
    OrderError,
    OrderNotFoundError,
    RateLimitError,
)
from services.auth.session_cache import SessionCache
from services.brokers.base import RestClient

logger = get_logger(__name__, component="brokers")

API_PREFIX = "/api/v1"
ACTIVITY_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"
OPEN_ACTIONS = {"POSITION_OPENED"}
CLOSE_ACTIONS = {"POSITION_CLOSED", "POSITION_PARTIALLY_CLOSED"}


def parse_activity_time(value: str) -> datetime:
    moment = datetime.fromisoformat(value.rstrip("Z"))
    return moment.replace(tzinfo=timezone.utc) if moment.tzinfo is None else moment


def activity_actions(activity: Dict[str, Any]) -> Set[str]:
    details = activity.get("details") or {}
    return {a.get("actionType") for a in details.get("actions", [])}


def matches_deal(activity: Dict[str, Any], deal_reference: str, affected: Dict[str, str]) -> bool:
    """Whether an activity belongs to the deal opened or closed by ``deal_reference``.

    ``affected`` maps the dealIds from the confirmation to their status; an
    OPENED deal matches its opening activity, anything else its close.
    """
    details = activity.get("details") or {}
    if deal_reference in (activity.get("dealReference"), details.get("dealReference")):
        return True
    status = affected.get(activity.get("dealId"))
    if status is None:
        return False
    actions = activity_actions(activity)
    wanted = OPEN_ACTIONS if status == "OPENED" else CLOSE_ACTIONS
    return not actions or bool(actions & wanted)


def map_capital_error(response: httpx.Response, operation: str, broker: str) -> None:
    try:
        body = response.json()
    except ValueError:
        body = {}
    code = body.get("errorCode") if isinstance(body, dict) else None
    message = code or response.text
    status = response.status_code

    if status == 404 and operation == "get_confirmation":
        raise OrderNotFoundError(message, broker=broker, status_code=status, api_error_code=code, api_response=body)
    if status == 429:
        raise RateLimitError(message, broker=broker, status_code=status, api_error_code=code, api_response=body)
    if status == 401:
        raise AuthenticationError(message, auth_provider=broker, details=body)
    if operation in ("open_position", "delete_position") and 400 <= status < 500:
        raise OrderError(f"Deal rejected: {message}", details=body)
    raise BrokerAPIError(message, broker=broker, status_code=status, api_error_code=code, api_response=body)


class CapitalClient(RestClient):
    """Authenticated Capital.com calls.

    Sessions come from the ``SessionCache``; a 401 invalidates the cached
    session and the call is retried once with a fresh login.
    """

    broker = BrokerName.CAPITAL.value

    def __init__(
        self,
        settings: CapitalSettings,
        session_cache: SessionCache,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[GatewayMetrics] = None,
        activity_lookback: timedelta = timedelta(hours=1),
    ):
        super().__init__(settings.base_url, settings.request_timeout_seconds, http_client, metrics)
        self.settings = settings
        self.session_cache = session_cache
        self.activity_lookback = activity_lookback

    def _raise_for_response(self, response: httpx.Response, operation: str) -> None:
        map_capital_error(response, operation, self.broker)

    async def _authed(self, method: str, path: str, operation: str, **kwargs: Any) -> Dict[str, Any]:
        for attempt in (1, 2):
            token = await self.session_cache.get_session(self.broker)
            headers = {
                "X-SECURITY-TOKEN": token.security_token,
                "CST": token.client_session_token,
                "Content-Type": "application/json",
            }
            try:
                response = await self._send(method, f"{API_PREFIX}{path}", operation, headers=headers, **kwargs)
            except AuthenticationError:
                if attempt == 2:
                    raise
                logger.info("Capital session rejected, renewing", operation=operation)
                self.session_cache.invalidate(self.broker, token)
                continue
            return self._json_or_empty(response)
        raise AssertionError("unreachable")

    async def open_position(self, instrument: str, side: Side, size: float) -> OrderAck:
        data = await self._authed(
            "POST", "/positions", "open_position",
            json={"epic": instrument, "direction": side.value, "size": size, "guaranteedStop": False},
        )
        deal_reference = data.get("dealReference")
        return OrderAck(
            broker=BrokerName.CAPITAL, instrument=instrument, order_id=deal_reference,
            reference_id=deal_reference, raw=data,
        )

    async def delete_position(self, instrument: str, deal_id: str) -> OrderAck:
        data = await self._authed("DELETE", f"/positions/{deal_id}", "delete_position")
        deal_reference = data.get("dealReference")
        return OrderAck(
            broker=BrokerName.CAPITAL, instrument=instrument, order_id=deal_reference,
            reference_id=deal_id, raw=data,
        )

    async def get_confirmation(self, deal_reference: str) -> Dict[str, Any]:
        return await self._authed("GET", f"/confirms/{deal_reference}", "get_confirmation")

    async def get_order(self, instrument: str, order_id: str) -> OrderStatus:
        data = await self.get_confirmation(order_id)
        deal_status = data.get("dealStatus", "")
        if deal_status == "REJECTED":
            raise OrderError(f"Deal {order_id} rejected: {data.get('reason') or 'no reason given'}",
                             order_id=order_id, details=data)
        accepted = deal_status == "ACCEPTED"
        level = float(data.get("level") or 0)
        size = float(data.get("size") or 0) if accepted else 0.0
        affected = data.get("affectedDeals") or []
        deal_id = affected[0].get("dealId") if affected else data.get("dealId")
        return OrderStatus(
            order_id=order_id,
            status=deal_status,
            executed_qty=size,
            cumulative_quote=level * size,
            avg_price=level,
            reference_id=deal_id,
        )

    async def affected_deals(self, deal_reference: str) -> Dict[str, str]:
        """dealId -> status for the deals touched by ``deal_reference``; empty if not confirmed yet."""
        try:
            data = await self.get_confirmation(deal_reference)
        except OrderNotFoundError:
            return {}
        return {d["dealId"]: d.get("status", "") for d in data.get("affectedDeals") or [] if d.get("dealId")}

    async def get_positions(self) -> List[Dict[str, Any]]:
        data = await self._authed("GET", "/positions", "get_positions")
        return data.get("positions", [])

    async def get_activity_history(self, from_ts: datetime, to_ts: datetime) -> List[Dict[str, Any]]:
        data = await self._authed(
            "GET", "/history/activity", "get_activity_history",
            params={
                "from": from_ts.astimezone(timezone.utc).strftime(ACTIVITY_TIME_FORMAT),
                "to": to_ts.astimezone(timezone.utc).strftime(ACTIVITY_TIME_FORMAT),
                "detailed": "true",
            },
        )
        return data.get("activities", [])

    async def get_trades(self, instrument: str, order_id: Optional[str] = None,
                         limit: Optional[int] = None) -> List[TradeRecord]:
        """Deals on ``instrument`` within the activity lookback, oldest first.

        With ``order_id`` (a deal reference) only the activities of that deal
        are returned, tagged with the deal reference so they match the order.
        """
        affected = await self.affected_deals(order_id) if order_id else {}
        now = datetime.now(timezone.utc)
        activities = await self.get_activity_history(now - self.activity_lookback, now)
        trades = []
        for activity in activities:
            if activity.get("epic") != instrument or activity.get("status") != "ACCEPTED":
                continue
            if order_id and not matches_deal(activity, order_id, affected):
                continue
            details = activity.get("details") or {}
            level = float(details.get("level") or 0)
            size = float(details.get("size") or 0)
            if size <= 0:
                continue
            trades.append(TradeRecord(
                order_id=order_id or activity.get("dealId"),
                qty=size,
                quote_qty=level * size,
                time_ms=int(parse_activity_time(activity.get("dateUTC") or activity["date"]).timestamp() * 1000),
                reference_id=activity.get("dealId"),
            ))
        trades.sort(key=lambda t: t.time_ms)
        return trades[-limit:] if limit else trades
