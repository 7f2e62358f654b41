"""Position lifecycle: open, close, reverse and external closes."""

from typing import Any, Dict, Iterable, List, Optional

from core.logging import bind_broker_context, get_audit_logger_safe, get_trading_logger_safe
from core.monitoring.alerting import AlertCategory, AlertSeverity
from core.monitoring.prometheus_metrics import GatewayMetrics
from core.trading.interfaces import (
    AlertSink,
    HistoryRepository,
    NotificationSink,
    PositionFilter,
    PositionRepository,
)
from core.trading.models import (
    BrokerName,
    ClosedProceeds,
    CloseReport,
    ExecutionResult,
    HistoryEvent,
    MarketType,
    OrderAck,
    Position,
    Settlement,
    SettlementResult,
    Side,
    TaskKind,
    TradeIntent,
    Unresolved,
)
from core.utils.clock import Clock, SystemClock, localize
from core.utils.exceptions import OrderError, PositionNotRecordedError, ValidationError
from core.utils.ids import generate_event_id
from services.executor.locks import InstrumentLockRegistry, instrument_key
from services.lifecycle.venues import Venue
from services.positions.cache import OpenPositionsCache
from services.settlement.resolver import SettlementResolver

logger = get_trading_logger_safe(__name__)
audit_logger = get_audit_logger_safe(__name__)

DASHBOARD_EVENT = "dashboard_update"


def realized_pnl(side: Side, open_notional: float, close_notional: float, fee_factor: float = 1.0) -> float:
    """P&L of a round trip; the fee factor discounts the proceeds leg."""
    if side is Side.BUY:
        return close_notional * fee_factor - open_notional
    return open_notional * fee_factor - close_notional


class PositionLifecycleEngine:
    """State machine per (strategy, instrument): NONE -> OPEN(side) -> NONE.

    Callers must hold the instrument's executor lock. A batch close that
    reaches other instruments borrows their locks from ``locks``. Every close
    funnels through ``_finalize_close`` whose update is filtered by
    ``open=True``, so a record is closed at most once no matter which path
    (gateway, sweep, stream) gets there first.
    """

    def __init__(
        self,
        venues: Iterable[Venue],
        store: PositionRepository,
        history: HistoryRepository,
        resolver: SettlementResolver,
        cache: OpenPositionsCache,
        notifier: Optional[NotificationSink] = None,
        alerts: Optional[AlertSink] = None,
        metrics: Optional[GatewayMetrics] = None,
        clock: Optional[Clock] = None,
        utc_offset_hours: int = -5,
        locks: Optional[InstrumentLockRegistry] = None,
    ):
        self._venues: Dict[tuple, Venue] = {(v.broker, v.market): v for v in venues}
        self.store = store
        self.history = history
        self.resolver = resolver
        self.cache = cache
        self.notifier = notifier
        self.alerts = alerts
        self.metrics = metrics
        self.clock = clock or SystemClock()
        self.utc_offset_hours = utc_offset_hours
        self.locks = locks

    @property
    def venues(self) -> List[Venue]:
        return list(self._venues.values())

    def venue_for(self, broker: BrokerName, market: MarketType) -> Venue:
        venue = self._venues.get((BrokerName(broker), MarketType(market)))
        if venue is None:
            raise ValidationError(f"No venue configured for {broker}:{market}", field="market",
                                  value=f"{broker}:{market}")
        return venue

    # ------------------------------------------------------------------ open

    async def open(self, intent: TradeIntent) -> Position:
        venue = self.venue_for(intent.broker, intent.market)
        log = bind_broker_context(logger, venue.broker.value, intent.strategy)

        applied_leverage = await venue.prepare(intent)
        # A failed submission means no order exists, so nothing is recorded
        ack = await venue.submit_open(intent)
        result = await self.resolver.resolve(venue.settlement_source, intent.instrument, ack)

        if isinstance(result, Unresolved) and result.rejected:
            log.warning("Open order rejected by broker", instrument=intent.instrument,
                        order_id=ack.order_id, reason=result.reason)
            await self._alert(
                "Order rejected",
                f"{venue.name} {intent.side.value} {intent.size} {intent.instrument} for {intent.strategy} "
                f"was rejected: {result.reason}",
                broker=venue.broker.value, strategy=intent.strategy, order_id=ack.order_id,
            )
            raise OrderError(result.reason, order_id=ack.order_id)

        now = self.clock.now()
        resolved = isinstance(result, Settlement)
        if resolved:
            reference_id = result.reference_id or ack.reference_id or ack.order_id
        else:
            reference_id = await self._locate_reference(venue, intent, ack)
        if applied_leverage is None:
            applied_leverage = float(intent.leverage or 0)
        position = Position(
            broker_reference_id=reference_id,
            strategy=intent.strategy,
            instrument=intent.instrument,
            market=intent.market,
            side=intent.side,
            size=intent.size,
            leverage=applied_leverage,
            open=True,
            buy_price=result.total_notional if resolved else 0.0,
            sell_price=0.0,
            broker=intent.broker,
            placeholder=not resolved,
            opened_at=now,
            localized_opened_at=localize(now, self.utc_offset_hours),
        )

        try:
            position_id = await self.store.create(position)
        except Exception as e:
            log.error("Order placed but position not recorded", instrument=intent.instrument,
                      order_id=ack.order_id, error=str(e))
            await self._alert(
                "Position not recorded",
                f"{venue.name} order {ack.order_id} for {intent.instrument} was placed but could not be stored: {e}",
                severity=AlertSeverity.CRITICAL, broker=venue.broker.value,
                strategy=intent.strategy, instrument=intent.instrument, order_id=ack.order_id,
            )
            raise PositionNotRecordedError(
                f"{venue.name} order {ack.order_id} placed but not recorded: {e}",
                order_id=ack.order_id,
                details={"instrument": intent.instrument, "strategy": intent.strategy},
            ) from e
        position = position.model_copy(update={"id": position_id})

        self.cache.increment(position.instrument)
        self._observe_open(position)
        history_details = None if resolved else {"order_id": ack.order_id, "order_reference": ack.reference_id,
                                                 "reason": result.reason}
        await self._record_history("OPEN", position, result, notional=position.buy_price, details=history_details)
        await self._notify("open", position)

        if resolved:
            log.info("Position opened", position_id=position_id, instrument=position.instrument,
                     side=position.side.value, notional=position.buy_price, tier=result.tier.value)
        else:
            log.warning("Placeholder position opened", position_id=position_id,
                        instrument=position.instrument, side=position.side.value, reason=result.reason)
            await self._alert(
                "Settlement unresolved on open",
                f"{venue.name} {position.side.value} {position.size} {position.instrument} for "
                f"{position.strategy} recorded as placeholder: {result.reason}",
                severity=AlertSeverity.MEDIUM, category=AlertCategory.SETTLEMENT,
                broker=venue.broker.value, position_id=position_id, order_id=ack.order_id,
                broker_reference_id=position.broker_reference_id,
            )
        return position

    # ----------------------------------------------------------------- close

    async def close(self, strategy: str, market: MarketType, broker: BrokerName,
                    held_instrument: Optional[str] = None) -> CloseReport:
        """Close every open position of ``strategy`` on the venue, newest first.

        Positions are closed one after another; a failure is reported and
        alerted, and the rest of the batch still runs. ``held_instrument`` is
        the instrument whose lock the caller holds; any other instrument's
        lock is taken for the duration of its close, and a busy one is
        reported as deferred without touching the broker.
        """
        venue = self.venue_for(broker, market)
        positions = await self.store.find(
            PositionFilter(strategy=strategy, broker=venue.broker, market=venue.market, open=True),
            newest_first=True,
        )
        held_key = instrument_key(held_instrument) if held_instrument else None
        report = CloseReport()
        for position in positions:
            borrowed = self.locks is not None and instrument_key(position.instrument) != held_key
            if borrowed and not self.locks.try_acquire(position.instrument):
                logger.info("Instrument busy, close deferred", position_id=position.id,
                            strategy=strategy, instrument=position.instrument)
                report.failed.append({
                    "position_id": position.id,
                    "instrument": position.instrument,
                    "broker_reference_id": position.broker_reference_id,
                    "error": "instrument busy",
                    "deferred": True,
                })
                continue
            try:
                closed = await self._close_one(venue, position)
            except Exception as e:
                logger.error("Failed to close position", position_id=position.id, broker=venue.broker.value,
                             strategy=strategy, instrument=position.instrument,
                             error_type=type(e).__name__, error=str(e))
                report.failed.append({
                    "position_id": position.id,
                    "instrument": position.instrument,
                    "broker_reference_id": position.broker_reference_id,
                    "error": str(e),
                })
                await self._alert(
                    "Broker close failed",
                    f"Closing {position.instrument} ({position.broker_reference_id}) for {strategy} "
                    f"on {venue.name} failed: {e}",
                    broker=venue.broker.value, position_id=position.id,
                )
                continue
            finally:
                if borrowed:
                    self.locks.release(position.instrument)
            if closed is not None:
                report.closed.append(closed)
        return report

    async def _close_one(self, venue: Venue, position: Position) -> Optional[Position]:
        ack = await venue.submit_close(position)
        result = await self.resolver.resolve(venue.settlement_source, position.instrument, ack)

        if isinstance(result, Unresolved) and result.rejected:
            # The broker position is untouched, so the record stays open
            raise OrderError(result.reason, order_id=ack.order_id)
        if isinstance(result, Unresolved):
            await self._alert(
                "Settlement unresolved on close",
                f"{venue.name} close of {position.instrument} ({position.broker_reference_id}) for "
                f"{position.strategy} recorded with zero proceeds: {result.reason}",
                severity=AlertSeverity.MEDIUM, category=AlertCategory.SETTLEMENT,
                broker=venue.broker.value, position_id=position.id, order_id=ack.order_id,
            )
            return await self._finalize_close(venue, position, 0.0, None, result, reason="gateway")

        reference_id = result.reference_id if venue.renames_on_close else None
        return await self._finalize_close(venue, position, result.total_notional, reference_id, result,
                                          reason="gateway")

    async def record_external_close(self, venue: Venue, position: Position,
                                    proceeds: Optional[ClosedProceeds], reason: str) -> Optional[Position]:
        """Close a record whose broker position is already gone.

        Without proceeds the record closes at zero, is flagged as a
        placeholder and an alert is raised for manual correction.
        """
        if proceeds is None:
            await self._alert(
                "Close proceeds not found",
                f"{venue.name} position {position.broker_reference_id} ({position.instrument}) for "
                f"{position.strategy} closed externally with no matching history; recorded at zero",
                severity=AlertSeverity.MEDIUM, category=AlertCategory.RECONCILIATION,
                broker=venue.broker.value, position_id=position.id, reason=reason,
            )
            return await self._finalize_close(venue, position, 0.0, None, None, reason=reason)

        reference_id = proceeds.reference_id if venue.renames_on_close else None
        return await self._finalize_close(venue, position, proceeds.notional, reference_id, None,
                                          reason=reason, source=proceeds.source)

    async def _finalize_close(self, venue: Venue, position: Position, close_notional: float,
                              reference_id: Optional[str], result: Optional[SettlementResult],
                              reason: str, source: Optional[str] = None) -> Optional[Position]:
        # P&L is only meaningful when both legs are known
        priced = close_notional > 0 and not position.placeholder
        pnl = realized_pnl(position.side, position.buy_price, close_notional, venue.fee_factor) if priced else 0.0
        now = self.clock.now()
        patch: Dict[str, Any] = {
            "open": False,
            "sell_price": close_notional,
            "realized_pnl": pnl,
            "closed_at": now,
            "placeholder": position.placeholder or close_notional <= 0,
        }
        if reference_id and reference_id != position.broker_reference_id:
            logger.info("Broker reference renamed on close", position_id=position.id,
                        old_reference=position.broker_reference_id, new_reference=reference_id)
            patch["broker_reference_id"] = reference_id

        updated = await self.store.update_one(PositionFilter(id=position.id, open=True), patch)
        if not updated:
            logger.info("Position already closed", position_id=position.id, reason=reason)
            return None

        closed = position.model_copy(update=patch)
        self.cache.decrement(closed.instrument)
        self._observe_close(closed, reason)
        await self._record_history("CLOSE", closed, result, notional=close_notional,
                                   details={"reason": reason, "source": source, "realized_pnl": pnl})
        await self._notify("close", closed)
        logger.info("Position closed", position_id=closed.id, broker=closed.broker.value,
                    strategy=closed.strategy, instrument=closed.instrument, reason=reason,
                    sell_price=close_notional, realized_pnl=pnl, placeholder=closed.placeholder)
        return closed

    # --------------------------------------------------------------- reverse

    async def reverse(self, intent: TradeIntent) -> ExecutionResult:
        """Open ``intent.side``, closing an opposing position of the strategy first."""
        venue = self.venue_for(intent.broker, intent.market)
        latest = await self.store.find(
            PositionFilter(strategy=intent.strategy, broker=venue.broker, market=venue.market, open=True),
            newest_first=True, limit=1,
        )
        result = ExecutionResult(kind=TaskKind.REVERSE, broker=venue.broker.value, strategy=intent.strategy,
                                 instrument=intent.instrument, status="opened")

        if latest and latest[0].side is not intent.side:
            report = await self.close(intent.strategy, venue.market, venue.broker,
                                      held_instrument=intent.instrument)
            result.closed = report.closed
            if not report.ok:
                # Opening now would leave both sides on the book
                result.status = "close_failed"
                result.error_message = f"{len(report.failed)} position(s) failed to close"
                result.data["failed"] = report.failed
                return result

        if not venue.can_open(intent.side):
            result.status = "closed" if result.closed else "skipped"
            result.data["reason"] = f"{venue.name} does not open {intent.side.value} positions"
            logger.info("Reverse finished without open", strategy=intent.strategy,
                        instrument=intent.instrument, closed=len(result.closed))
            return result

        result.opened = await self.open(intent)
        result.status = "reversed" if result.closed else "opened"
        return result

    # --------------------------------------------------------------- helpers

    async def _record_history(self, event: str, position: Position, result: Optional[SettlementResult],
                              notional: float, details: Optional[Dict[str, Any]] = None) -> None:
        now = self.clock.now()
        settlement = result if isinstance(result, Settlement) else None
        entry = HistoryEvent(
            event_id=generate_event_id(),
            position_id=position.id,
            event=event,
            broker=position.broker,
            instrument=position.instrument,
            strategy=position.strategy,
            side=position.side,
            size=position.size,
            notional=notional,
            unit_price=settlement.unit_price if settlement else 0.0,
            settlement_tier=result.tier if result is not None else None,
            broker_reference_id=position.broker_reference_id,
            details=details or {},
            created_at=now,
            localized_created_at=localize(now, self.utc_offset_hours),
        )
        try:
            await self.history.record(entry)
        except Exception as e:
            # The position row is already committed
            logger.error("Failed to record history event", position_id=position.id, position_event=event,
                         error=str(e))
            return
        audit_logger.info("Position event", position_event=event, position_id=position.id,
                          broker=position.broker.value, strategy=position.strategy,
                          instrument=position.instrument, notional=notional)

    async def _locate_reference(self, venue: Venue, intent: TradeIntent, ack: OrderAck) -> Optional[str]:
        try:
            recorded = await self.store.find(
                PositionFilter(broker=venue.broker, market=venue.market, open=True), newest_first=True
            )
            taken = {venue.position_key(p) for p in recorded} - {None}
        except Exception as e:
            logger.warning("Could not read recorded positions", venue=venue.name, error=str(e))
            taken = None
        return await venue.locate_reference(intent, ack, taken)

    async def _notify(self, action: str, position: Position) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.emit(DASHBOARD_EVENT, {
                "action": action,
                "position": position.model_dump(mode="json"),
            })
        except Exception as e:
            logger.warning("Dashboard notification failed", action=action, position_id=position.id,
                           error_type=type(e).__name__, error=str(e))

    async def _alert(self, title: str, message: str, severity: AlertSeverity = AlertSeverity.HIGH,
                     category: AlertCategory = AlertCategory.TRADING, broker: str = "unknown",
                     **details: Any) -> None:
        if self.alerts is None:
            return
        await self.alerts.send_alert(title, message, severity=severity, category=category,
                                     component="lifecycle", broker=broker, **details)

    def _observe_open(self, position: Position) -> None:
        if self.metrics is None:
            return
        self.metrics.positions_opened.labels(
            broker=position.broker.value, market=position.market.value, side=position.side.value
        ).inc()
        self.metrics.open_positions.labels(instrument=position.instrument).set(self.cache.count(position.instrument))

    def _observe_close(self, position: Position, reason: str) -> None:
        if self.metrics is None:
            return
        self.metrics.positions_closed.labels(
            broker=position.broker.value, market=position.market.value, reason=reason
        ).inc()
        self.metrics.realized_pnl.labels(broker=position.broker.value, strategy=position.strategy).inc(
            position.realized_pnl or 0.0
        )
        self.metrics.open_positions.labels(instrument=position.instrument).set(self.cache.count(position.instrument))
