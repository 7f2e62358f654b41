"""Broker/market adapters the lifecycle engine trades through.

A venue is the single parameterized place where a side becomes a broker
call: opening submits ``intent.side``, closing submits the position's
opposite side for the original size.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Set

from core.logging import get_logger
from core.trading.interfaces import SettlementSource
from core.trading.models import (
    BrokerName,
    ClosedProceeds,
    MarketType,
    OrderAck,
    Position,
    Side,
    TradeIntent,
)
from core.utils.clock import to_epoch_millis
from core.utils.exceptions import OrderError, UnsupportedOperationError
from services.brokers.binance import BinanceFuturesClient, BinanceSpotClient
from services.brokers.capital import CapitalClient
from services.brokers.capital.client import CLOSE_ACTIONS, activity_actions, parse_activity_time

logger = get_logger(__name__, component="brokers")

class Venue(ABC):
    """One broker market as seen by the lifecycle engine."""

    broker: BrokerName
    market: MarketType
    supports_short: bool = True
    # Whether a close settlement reference replaces the stored broker reference
    renames_on_close: bool = False

    def __init__(self, fee_factor: float = 1.0):
        if fee_factor <= 0:
            raise ValueError("fee_factor must be positive")
        self.fee_factor = fee_factor

    @property
    def name(self) -> str:
        return f"{self.broker.value}:{self.market.value}"

    @property
    @abstractmethod
    def settlement_source(self) -> SettlementSource:
        ...

    def can_open(self, side: Side) -> bool:
        return side is Side.BUY or self.supports_short

    async def prepare(self, intent: TradeIntent) -> Optional[float]:
        """Hook run before an open order is submitted; returns the leverage applied, if any."""
        return None

    @abstractmethod
    async def submit_open(self, intent: TradeIntent) -> OrderAck:
        ...

    @abstractmethod
    async def submit_close(self, position: Position) -> OrderAck:
        ...

    async def locate_reference(self, intent: TradeIntent, ack: OrderAck,
                               taken: Optional[Set[str]]) -> Optional[str]:
        """Broker reference for an open whose settlement could not be resolved.

        ``taken`` holds the position keys already recorded locally, or ``None``
        when they could not be read.
        """
        return ack.reference_id or ack.order_id

    def position_key(self, position: Position) -> Optional[str]:
        """Identifier matched against ``open_position_keys``."""
        return position.broker_reference_id

    async def open_position_keys(self) -> Optional[Set[str]]:
        """Broker-side open positions; ``None`` when the venue cannot be reconciled."""
        return None

    async def backfill_close(self, position: Position, since: datetime,
                             until: datetime) -> Optional[ClosedProceeds]:
        """Close notional of a position closed outside the gateway, if the broker kept it."""
        return None

    def _reject_short(self, intent: TradeIntent) -> None:
        if not self.can_open(intent.side):
            raise UnsupportedOperationError(
                f"{self.name} cannot open a {intent.side.value} position", venue=self.name,
                details={"instrument": intent.instrument, "strategy": intent.strategy},
            )


class BinanceSpotVenue(Venue):
    broker = BrokerName.BINANCE
    market = MarketType.SPOT
    supports_short = False

    def __init__(self, client: BinanceSpotClient, fee_factor: float = 1.0):
        super().__init__(fee_factor)
        self.client = client

    @property
    def settlement_source(self) -> SettlementSource:
        return self.client

    async def submit_open(self, intent: TradeIntent) -> OrderAck:
        self._reject_short(intent)
        return await self.client.place_market_order(intent.instrument, intent.side, intent.size)

    async def submit_close(self, position: Position) -> OrderAck:
        return await self.client.place_market_order(position.instrument, position.side.opposite, position.size)


class BinanceFuturesVenue(Venue):
    """USD-M futures; positions are keyed by symbol since the account is one-way."""

    broker = BrokerName.BINANCE
    market = MarketType.FUTURE

    def __init__(self, client: BinanceFuturesClient, fee_factor: float = 1.0, default_leverage: int = 1):
        super().__init__(fee_factor)
        self.client = client
        self.default_leverage = default_leverage

    @property
    def settlement_source(self) -> SettlementSource:
        return self.client

    async def prepare(self, intent: TradeIntent) -> Optional[float]:
        leverage = intent.leverage or self.default_leverage
        await self.client.set_leverage(intent.instrument, leverage)
        return float(leverage)

    async def submit_open(self, intent: TradeIntent) -> OrderAck:
        return await self.client.place_market_order(intent.instrument, intent.side, intent.size)

    async def submit_close(self, position: Position) -> OrderAck:
        return await self.client.place_market_order(
            position.instrument, position.side.opposite, position.size, reduce_only=True
        )

    def position_key(self, position: Position) -> Optional[str]:
        return position.instrument

    async def open_position_keys(self) -> Optional[Set[str]]:
        risk = await self.client.get_position_risk()
        return {p["symbol"] for p in risk if float(p.get("positionAmt", 0) or 0) != 0}

    async def backfill_close(self, position: Position, since: datetime,
                             until: datetime) -> Optional[ClosedProceeds]:
        trades = await self.client.get_trades(
            position.instrument, start_ms=to_epoch_millis(since), end_ms=to_epoch_millis(until)
        )
        # Only reducing fills carry realized P&L
        closing = [t for t in trades if t.realized_pnl != 0]
        qty = sum(t.qty for t in closing)
        if qty <= 0:
            return None
        unit_price = sum(t.quote_qty for t in closing) / qty
        return ClosedProceeds(notional=unit_price * position.size, source="userTrades")


class CapitalVenue(Venue):
    """Capital.com CFDs; positions are keyed by ``dealId``."""

    broker = BrokerName.CAPITAL
    market = MarketType.CFD
    renames_on_close = True

    def __init__(self, client: CapitalClient, fee_factor: float = 1.0):
        super().__init__(fee_factor)
        self.client = client

    @property
    def settlement_source(self) -> SettlementSource:
        return self.client

    async def submit_open(self, intent: TradeIntent) -> OrderAck:
        return await self.client.open_position(intent.instrument, intent.side, intent.size)

    async def submit_close(self, position: Position) -> OrderAck:
        if not position.broker_reference_id:
            raise OrderError("Position has no dealId to close", details={"position_id": position.id})
        return await self.client.delete_position(position.instrument, position.broker_reference_id)

    async def open_position_keys(self) -> Optional[Set[str]]:
        positions = await self.client.get_positions()
        return {p["position"]["dealId"] for p in positions if p.get("position", {}).get("dealId")}

    async def locate_reference(self, intent: TradeIntent, ack: OrderAck,
                               taken: Optional[Set[str]]) -> Optional[str]:
        """Newest untracked deal on the epic and direction of the open.

        The deal reference of the ack is never a position key, so without a
        dealId the record is kept unkeyed and reconciliation leaves it alone.
        """
        if taken is None:
            return None
        try:
            positions = await self.client.get_positions()
        except Exception as e:
            logger.warning("Capital position lookup failed", instrument=intent.instrument,
                           deal_reference=ack.reference_id, error=str(e))
            return None

        candidates = []
        for entry in positions:
            position = entry.get("position") or {}
            epic = (entry.get("market") or {}).get("epic") or position.get("epic")
            deal_id = position.get("dealId")
            if not deal_id or deal_id in taken or epic != intent.instrument:
                continue
            if position.get("direction") not in (None, intent.side.value):
                continue
            candidates.append((position.get("createdDateUTC") or position.get("createdDate") or "", deal_id))
        if not candidates:
            logger.warning("No untracked Capital deal for unresolved open", instrument=intent.instrument,
                           deal_reference=ack.reference_id)
            return None
        _, deal_id = max(candidates)
        logger.info("Capital deal located for unresolved open", instrument=intent.instrument,
                    deal_reference=ack.reference_id, deal_id=deal_id)
        return deal_id

    async def backfill_close(self, position: Position, since: datetime,
                             until: datetime) -> Optional[ClosedProceeds]:
        activities = await self.client.get_activity_history(since, until)
        closes = []
        for activity in activities:
            if activity.get("dealId") != position.broker_reference_id or activity.get("status") != "ACCEPTED":
                continue
            details = activity.get("details") or {}
            if activity_actions(activity) & CLOSE_ACTIONS and float(details.get("level") or 0) > 0:
                closes.append((parse_activity_time(activity.get("dateUTC") or activity["date"]), activity))
        if not closes:
            return None
        _, activity = max(closes, key=lambda item: item[0])
        logger.debug("Capital close found in activity history", deal_id=position.broker_reference_id,
                     source=activity.get("source"))
        return ClosedProceeds(
            notional=float(activity["details"]["level"]) * position.size,
            reference_id=position.broker_reference_id,
            source="activity",
        )
