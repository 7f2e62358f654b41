"""Tiered resolution of a broker order into a realized fill."""

import asyncio
from typing import Awaitable, Iterable, Optional, TypeVar

from core.config.settings import SettlementSettings
from core.logging import get_settlement_logger_safe
from core.monitoring.prometheus_metrics import GatewayMetrics
from core.trading.interfaces import SettlementSource
from core.trading.models import (
    OrderAck,
    OrderStatus,
    Settlement,
    SettlementResult,
    SettlementTier,
    TradeRecord,
    Unresolved,
)
from core.utils.exceptions import OrderError, OrderNotFoundError

logger = get_settlement_logger_safe(__name__)

T = TypeVar("T")


def aggregate_trades(trades: Iterable[TradeRecord], tier: SettlementTier,
                     reference_id: Optional[str] = None) -> Settlement:
    """Sum quantity and notional; unit price is zero when nothing filled.

    A position reference carried by the trades wins over ``reference_id``.
    """
    total_qty = 0.0
    total_notional = 0.0
    for trade in trades:
        total_qty += trade.qty
        total_notional += trade.quote_qty
        reference_id = trade.reference_id or reference_id
    unit_price = total_notional / total_qty if total_qty else 0.0
    return Settlement(
        unit_price=unit_price,
        filled_qty=total_qty,
        total_notional=total_notional,
        tier=tier,
        reference_id=reference_id,
    )


def _is_filled(settlement: Settlement) -> bool:
    return settlement.filled_qty > 0 and settlement.unit_price > 0


class SettlementResolver:
    """Turns an ``OrderAck`` into a ``Settlement`` or ``Unresolved``.

    Tiers, first success wins:

    1. fills embedded in the acknowledgement
    2. direct order lookup (``OrderNotFoundError`` falls through; an
       ``OrderError`` ends resolution as a rejected ``Unresolved``)
    3. account trades matching the order id
    4. most recent trades on the instrument, only when there is no order id
       (low confidence)

    Every broker call is bounded by ``call_timeout_seconds``; timeouts and
    broker errors fold into the next tier, so ``resolve`` does not raise for
    broker failures.
    """

    def __init__(self, settings: Optional[SettlementSettings] = None, metrics: Optional[GatewayMetrics] = None):
        self.settings = settings or SettlementSettings()
        self.metrics = metrics

    async def _bounded(self, call: Awaitable[T]) -> T:
        return await asyncio.wait_for(call, timeout=self.settings.call_timeout_seconds)

    async def resolve(self, source: SettlementSource, instrument: str, ack: OrderAck) -> SettlementResult:
        result = await self._resolve(source, instrument, ack)
        broker = getattr(source.broker, "value", source.broker)
        if self.metrics is not None:
            self.metrics.settlement_outcomes.labels(broker=broker, tier=result.tier.value).inc()
        if isinstance(result, Unresolved):
            logger.warning("Settlement unresolved", broker=broker, instrument=instrument,
                           order_id=ack.order_id, reason=result.reason)
        elif result.low_confidence:
            logger.warning("Settlement estimated from recent trades", broker=broker, instrument=instrument,
                           unit_price=result.unit_price, filled_qty=result.filled_qty)
        else:
            logger.info("Settlement resolved", broker=broker, instrument=instrument, order_id=ack.order_id,
                        tier=result.tier.value, unit_price=result.unit_price, filled_qty=result.filled_qty)
        return result

    async def _resolve(self, source: SettlementSource, instrument: str, ack: OrderAck) -> SettlementResult:
        reference_id = ack.reference_id or ack.order_id

        if ack.fills:
            embedded = aggregate_trades(
                (TradeRecord(order_id=ack.order_id, qty=f.qty, quote_qty=f.notional) for f in ack.fills),
                SettlementTier.EMBEDDED_FILLS,
                reference_id,
            )
            if _is_filled(embedded):
                return embedded

        if ack.order_id is None:
            return await self._from_recent_trades(source, instrument, reference_id)

        looked_up = await self._from_order_lookup(source, instrument, ack.order_id, reference_id)
        if looked_up is not None:
            return looked_up

        from_history = await self._from_trade_history(source, instrument, ack.order_id, reference_id)
        if from_history is not None:
            return from_history

        return Unresolved(reason=f"no fills found for order {ack.order_id}")

    async def _from_order_lookup(self, source: SettlementSource, instrument: str, order_id: str,
                                 reference_id: Optional[str]) -> Optional[SettlementResult]:
        try:
            status: OrderStatus = await self._bounded(source.get_order(instrument, order_id))
        except OrderError as e:
            logger.warning("Order rejected by broker", instrument=instrument, order_id=order_id, error=str(e))
            return Unresolved(reason=f"order {order_id} rejected: {e}", rejected=True)
        except OrderNotFoundError:
            logger.info("Order not visible yet, trying trade history", instrument=instrument, order_id=order_id)
            return None
        except asyncio.TimeoutError:
            logger.warning("Order lookup timed out", instrument=instrument, order_id=order_id)
            return None
        except Exception as e:
            logger.warning("Order lookup failed", instrument=instrument, order_id=order_id, error=str(e))
            return None

        if status.executed_qty <= 0:
            return None
        notional = status.cumulative_quote or status.avg_price * status.executed_qty
        settlement = Settlement(
            unit_price=notional / status.executed_qty,
            filled_qty=status.executed_qty,
            total_notional=notional,
            tier=SettlementTier.ORDER_LOOKUP,
            reference_id=status.reference_id or reference_id,
        )
        return settlement if _is_filled(settlement) else None

    async def _from_trade_history(self, source: SettlementSource, instrument: str, order_id: str,
                                  reference_id: Optional[str]) -> Optional[Settlement]:
        try:
            trades = await self._bounded(
                source.get_trades(instrument, order_id=order_id, limit=self.settings.trade_history_limit)
            )
        except asyncio.TimeoutError:
            logger.warning("Trade history lookup timed out", instrument=instrument, order_id=order_id)
            return None
        except Exception as e:
            logger.warning("Trade history lookup failed", instrument=instrument, order_id=order_id, error=str(e))
            return None

        matches = [t for t in trades if t.order_id == order_id]
        settlement = aggregate_trades(matches, SettlementTier.TRADE_HISTORY, reference_id)
        return settlement if _is_filled(settlement) else None

    async def _from_recent_trades(self, source: SettlementSource, instrument: str,
                                  reference_id: Optional[str]) -> SettlementResult:
        limit = self.settings.recent_trades_limit
        try:
            trades = await self._bounded(source.get_trades(instrument, order_id=None, limit=limit))
        except asyncio.TimeoutError:
            return Unresolved(reason="recent trades lookup timed out")
        except Exception as e:
            return Unresolved(reason=f"recent trades lookup failed: {e}")

        recent = sorted(trades, key=lambda t: t.time_ms)[-limit:]
        settlement = aggregate_trades(recent, SettlementTier.RECENT_TRADES, reference_id)
        if not _is_filled(settlement):
            return Unresolved(reason="no order id and no recent trades")
        return settlement
