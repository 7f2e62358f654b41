"""Periodic comparison of local open positions against broker state."""

from datetime import timedelta
from typing import Dict, Optional

from core.config.settings import ReconciliationSettings
from core.logging import get_reconciliation_logger_safe
from core.monitoring.alerting import AlertCategory, AlertSeverity
from core.monitoring.prometheus_metrics import GatewayMetrics
from core.services.base_service import BaseService
from core.trading.interfaces import AlertSink, PositionFilter
from core.trading.models import Position
from core.utils.clock import Clock, SystemClock
from services.executor.locks import InstrumentLockRegistry
from services.lifecycle.engine import PositionLifecycleEngine
from services.lifecycle.venues import Venue

logger = get_reconciliation_logger_safe(__name__)


class ReconciliationSweep(BaseService):
    """Closes local records whose broker position has vanished.

    Runs every ``interval_seconds`` over each venue that exposes its open
    positions. Closing goes through the engine's external-close path under
    the instrument lock; an instrument busy in the executor is skipped and
    picked up by the next run. Re-running with no broker change is a no-op.
    """

    def __init__(
        self,
        engine: PositionLifecycleEngine,
        locks: InstrumentLockRegistry,
        settings: Optional[ReconciliationSettings] = None,
        alerts: Optional[AlertSink] = None,
        metrics: Optional[GatewayMetrics] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__("reconciliation")
        self.engine = engine
        self.locks = locks
        self.settings = settings or ReconciliationSettings()
        self.alerts = alerts
        self.metrics = metrics
        self.clock = clock or SystemClock()

    async def _start_implementation(self) -> None:
        self._spawn(self._run_periodically(), "sweep")

    async def _run_periodically(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Reconciliation run failed", error_type=type(e).__name__, error=str(e))
            if await self._shutdown_requested(self.settings.interval_seconds):
                break

    async def run_once(self) -> Dict[str, int]:
        """Reconcile every venue once; returns closed record counts per venue."""
        closed: Dict[str, int] = {}
        for venue in self.engine.venues:
            try:
                count = await self.reconcile_venue(venue)
            except Exception as e:
                logger.error("Venue reconciliation failed", venue=venue.name,
                             error_type=type(e).__name__, error=str(e))
                self._observe(venue, "error")
                continue
            if count is not None:
                closed[venue.name] = count
        return closed

    async def reconcile_venue(self, venue: Venue) -> Optional[int]:
        snapshot_at = self.clock.now()
        keys = await venue.open_position_keys()
        if keys is None:
            return None

        local = await self.engine.store.find(
            PositionFilter(broker=venue.broker, market=venue.market, open=True), newest_first=False
        )
        # Records created after the broker snapshot cannot be judged by it, and a
        # record without a broker key cannot be matched against the broker at all
        orphans = []
        for p in local:
            key = venue.position_key(p)
            if key is None:
                logger.debug("Record has no broker key, skipped", venue=venue.name, position_id=p.id)
                continue
            if p.opened_at <= snapshot_at and key not in keys:
                orphans.append(p)
        closed = 0
        for position in orphans:
            if await self.reconcile_position(venue, position, reason="reconciliation") is not None:
                closed += 1

        self._observe(venue, "ok")
        logger.info("Venue reconciled", venue=venue.name, broker_open=len(keys), local_open=len(local),
                    orphans=len(orphans), closed=closed)
        return closed

    async def reconcile_position(self, venue: Venue, position: Position, reason: str) -> Optional[Position]:
        if not self.locks.try_acquire(position.instrument):
            logger.debug("Instrument busy, deferring reconciliation", instrument=position.instrument,
                         position_id=position.id)
            return None
        try:
            since = position.opened_at - timedelta(seconds=self.settings.window_buffer_seconds)
            try:
                proceeds = await venue.backfill_close(position, since, self.clock.now())
            except Exception as e:
                # Broker history unavailable; retry on the next run rather than close at zero
                logger.warning("Close backfill failed", venue=venue.name, position_id=position.id,
                               error_type=type(e).__name__, error=str(e))
                return None

            closed = await self.engine.record_external_close(venue, position, proceeds, reason=reason)
        finally:
            self.locks.release(position.instrument)

        if closed is not None and proceeds is not None and self.alerts is not None:
            await self.alerts.send_alert(
                "Position closed by reconciliation",
                f"{venue.name} position {position.broker_reference_id} ({position.instrument}) for "
                f"{position.strategy} was closed at the broker; realized P&L {closed.realized_pnl:.2f}",
                severity=AlertSeverity.LOW, category=AlertCategory.RECONCILIATION,
                component="reconciliation", broker=venue.broker.value, position_id=position.id,
            )
        return closed

    def _observe(self, venue: Venue, status: str) -> None:
        if self.metrics is not None:
            self.metrics.reconciliation_runs.labels(venue=venue.name, status=status).inc()
