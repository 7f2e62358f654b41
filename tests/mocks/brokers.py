"""Scriptable broker doubles for settlement and lifecycle tests."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from core.trading.models import (
    BrokerName,
    ClosedProceeds,
    MarketType,
    OrderAck,
    OrderStatus,
    Position,
    TradeIntent,
    TradeRecord,
)
from core.utils.exceptions import OrderNotFoundError
from services.lifecycle.venues import Venue


class FakeSettlementSource:
    def __init__(self, broker: BrokerName = BrokerName.BINANCE, orders: Optional[Dict[str, OrderStatus]] = None,
                 trades: Optional[List[TradeRecord]] = None, order_error: Optional[Exception] = None,
                 trades_error: Optional[Exception] = None, delay: float = 0.0):
        self.broker = broker
        self.orders = orders or {}
        self.trades = trades or []
        self.order_error = order_error
        self.trades_error = trades_error
        self.delay = delay
        self.order_calls: List[str] = []
        self.trade_calls: List[Dict[str, Any]] = []

    async def get_order(self, instrument: str, order_id: str) -> OrderStatus:
        self.order_calls.append(order_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.order_error is not None:
            raise self.order_error
        if order_id not in self.orders:
            raise OrderNotFoundError("Order does not exist.", broker=self.broker.value, order_id=order_id)
        return self.orders[order_id]

    async def get_trades(self, instrument: str, order_id: Optional[str] = None,
                         limit: Optional[int] = None) -> List[TradeRecord]:
        self.trade_calls.append({"instrument": instrument, "order_id": order_id, "limit": limit})
        if self.trades_error is not None:
            raise self.trades_error
        return list(self.trades)


class FakeVenue(Venue):
    """Venue whose acks, broker positions and history are set by the test."""

    def __init__(self, broker: BrokerName = BrokerName.BINANCE, market: MarketType = MarketType.FUTURE,
                 fee_factor: float = 1.0, supports_short: bool = True, renames_on_close: bool = False,
                 source: Optional[FakeSettlementSource] = None, reconcilable: bool = True):
        super().__init__(fee_factor)
        self.broker = broker
        self.market = market
        self.supports_short = supports_short
        self.renames_on_close = renames_on_close
        self.source = source or FakeSettlementSource(broker)
        self.reconcilable = reconcilable
        self.open_acks: List[OrderAck] = []
        self.close_acks: List[OrderAck] = []
        self.close_errors: Dict[str, Exception] = {}
        self.submitted_opens: List[TradeIntent] = []
        self.submitted_closes: List[Position] = []
        self.broker_keys: Set[str] = set()
        self.proceeds: Dict[str, ClosedProceeds] = {}
        self.backfill_calls: List[Dict[str, Any]] = []
        self.prepared: List[TradeIntent] = []
        self.applied_leverage: Optional[float] = None

    @property
    def settlement_source(self):
        return self.source

    async def prepare(self, intent: TradeIntent) -> Optional[float]:
        self.prepared.append(intent)
        return self.applied_leverage

    async def submit_open(self, intent: TradeIntent) -> OrderAck:
        self._reject_short(intent)
        self.submitted_opens.append(intent)
        return self.open_acks.pop(0)

    async def submit_close(self, position: Position) -> OrderAck:
        self.submitted_closes.append(position)
        error = self.close_errors.get(position.broker_reference_id)
        if error is not None:
            raise error
        return self.close_acks.pop(0)

    def position_key(self, position: Position) -> Optional[str]:
        # One-way futures accounts hold one position per symbol
        if self.market is MarketType.FUTURE:
            return position.instrument
        return position.broker_reference_id

    async def open_position_keys(self) -> Optional[Set[str]]:
        return set(self.broker_keys) if self.reconcilable else None

    async def backfill_close(self, position: Position, since: datetime,
                             until: datetime) -> Optional[ClosedProceeds]:
        self.backfill_calls.append({"position_id": position.id, "since": since, "until": until})
        return self.proceeds.get(self.position_key(position))


class RecordingNotifier:
    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append({"event": event, "payload": payload})


class RecordingAlerts:
    def __init__(self):
        self.alerts: List[Dict[str, Any]] = []

    async def send_alert(self, title: str, message: str, **kwargs: Any) -> bool:
        self.alerts.append({"title": title, "message": message, **kwargs})
        return True

    @property
    def titles(self) -> List[str]:
        return [a["title"] for a in self.alerts]
