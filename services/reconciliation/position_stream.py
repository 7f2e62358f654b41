"""Binance futures user-data stream closing positions as they go flat."""

import asyncio
import json
from datetime import timedelta
from typing import Any, Callable, Optional

import websockets

from core.config.settings import BinanceSettings, ReconciliationSettings, ReconnectionSettings
from core.logging import get_reconciliation_logger_safe
from core.services.base_service import BaseService
from core.trading.interfaces import PositionFilter
from core.utils.clock import Clock, SystemClock, from_epoch_millis
from services.brokers.binance import BinanceFuturesClient
from services.executor.locks import InstrumentLockRegistry
from services.lifecycle.engine import PositionLifecycleEngine
from services.lifecycle.venues import BinanceFuturesVenue
from services.positions.cache import OpenPositionsCache

logger = get_reconciliation_logger_safe(__name__)

ConnectFactory = Callable[[str], Any]


def backoff_delay(attempt: int, settings: ReconnectionSettings) -> float:
    """Exponential delay for the ``attempt``-th consecutive reconnect (1-based)."""
    delay = settings.base_delay_seconds * (settings.backoff_multiplier ** (max(attempt, 1) - 1))
    return min(delay, settings.max_delay_seconds)


class FuturesPositionStream(BaseService):
    """Real-time counterpart of the reconciliation sweep for USD-M futures.

    Listens for ``ACCOUNT_UPDATE`` events; a position amount of zero on an
    instrument in the open-positions cache closes the matching local
    records. The listen key is kept alive on a fixed cadence and the
    connection is re-established with exponential backoff.
    """

    def __init__(
        self,
        client: BinanceFuturesClient,
        venue: BinanceFuturesVenue,
        engine: PositionLifecycleEngine,
        cache: OpenPositionsCache,
        locks: InstrumentLockRegistry,
        binance_settings: BinanceSettings,
        reconnection: Optional[ReconnectionSettings] = None,
        reconciliation: Optional[ReconciliationSettings] = None,
        connect: Optional[ConnectFactory] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__("position_stream")
        self.client = client
        self.venue = venue
        self.engine = engine
        self.cache = cache
        self.locks = locks
        self.binance_settings = binance_settings
        self.reconnection = reconnection or ReconnectionSettings()
        self.reconciliation = reconciliation or ReconciliationSettings()
        self._connect = connect or websockets.connect
        self.clock = clock or SystemClock()
        self.reconnect_attempts = 0

    async def _start_implementation(self) -> None:
        self._spawn(self._run(), "stream")

    async def _run(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await self._session()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Position stream disconnected", error_type=type(e).__name__, error=str(e))

            if self._shutdown_event.is_set():
                break
            self.reconnect_attempts += 1
            max_attempts = self.reconnection.max_attempts
            if max_attempts and self.reconnect_attempts > max_attempts:
                logger.error("Position stream giving up", attempts=self.reconnect_attempts - 1)
                break
            delay = backoff_delay(self.reconnect_attempts, self.reconnection)
            logger.info("Reconnecting position stream", attempt=self.reconnect_attempts, delay_seconds=delay)
            await self.clock.sleep(delay)

    async def _session(self) -> None:
        listen_key = await self.client.create_listen_key()
        url = f"{self.binance_settings.futures_ws_url.rstrip('/')}/{listen_key}"
        async with self._connect(url) as ws:
            self.reconnect_attempts = 0
            logger.info("Position stream connected")
            keepalive = asyncio.create_task(self._keepalive(listen_key))
            try:
                async for raw in ws:
                    if not await self.handle_message(raw):
                        break
            finally:
                keepalive.cancel()
                try:
                    await keepalive
                except asyncio.CancelledError:
                    pass

    async def _keepalive(self, listen_key: str) -> None:
        interval = self.binance_settings.listen_key_keepalive_minutes * 60
        while True:
            await self.clock.sleep(interval)
            try:
                await self.client.keepalive_listen_key(listen_key)
                logger.debug("Listen key kept alive")
            except Exception as e:
                logger.warning("Listen key keepalive failed", error=str(e))

    async def handle_message(self, raw: Any) -> bool:
        """Process one stream message; False asks for a reconnect."""
        message = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        event = message.get("e")
        if event == "listenKeyExpired":
            logger.info("Listen key expired, reconnecting")
            return False
        if event != "ACCOUNT_UPDATE":
            return True

        event_time = message.get("T") or message.get("E")
        for entry in message.get("a", {}).get("P", []):
            symbol = entry.get("s")
            if not symbol or float(entry.get("pa", 0) or 0) != 0 or symbol not in self.cache:
                continue
            await self.close_instrument(symbol, event_time)
        return True

    async def close_instrument(self, symbol: str, event_time_ms: Optional[int] = None) -> int:
        if not self.locks.try_acquire(symbol):
            # The executor is mutating this instrument itself
            logger.debug("Instrument busy, leaving flat event to the sweep", instrument=symbol)
            return 0
        try:
            positions = await self.engine.store.find(PositionFilter(
                broker=self.venue.broker, market=self.venue.market, instrument=symbol, open=True,
            ))
            cutoff = from_epoch_millis(event_time_ms) if event_time_ms else None
            now = self.clock.now()
            closed = 0
            for position in positions:
                if cutoff is not None and position.opened_at > cutoff:
                    continue
                since = position.opened_at - timedelta(seconds=self.reconciliation.window_buffer_seconds)
                try:
                    proceeds = await self.venue.backfill_close(position, since, now)
                except Exception as e:
                    logger.warning("Close backfill failed", position_id=position.id, error=str(e))
                    continue
                if await self.engine.record_external_close(self.venue, position, proceeds,
                                                           reason="position_stream") is not None:
                    closed += 1
            return closed
        finally:
            self.locks.release(symbol)
