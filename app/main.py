# app/main.py

import asyncio
import signal
import sys
from typing import Dict, List, Optional

from prometheus_client import start_http_server

from core.logging import configure_logging, get_logger
from core.trading.interfaces import PositionFilter
from core.trading.models import BrokerName, MarketType, Position
from core.utils.exceptions import ConfigurationError
from app.containers import AppContainer


class ApplicationOrchestrator:
    """Builds the container, starts gateway services in order and stops them in reverse."""

    def __init__(self, container: Optional[AppContainer] = None):
        self.container = container or AppContainer()
        self._shutdown_event = asyncio.Event()
        self._started_services: List = []

        self.settings = self.container.settings()
        configure_logging(self.settings)
        self.logger = get_logger("trade_gateway.main", component="application")
        self.logger.info("Trade gateway initializing", active_brokers=self.settings.active_brokers,
                         environment=self.settings.environment.value)

        self._validate_broker_configuration()

    def _validate_broker_configuration(self):
        """Fail fast when an active broker has no credentials outside development."""
        missing = []
        if self.settings.is_broker_active(BrokerName.BINANCE.value):
            if not self.settings.binance.api_key or not self.settings.binance.api_secret:
                missing.append("BINANCE__API_KEY/BINANCE__API_SECRET")
        if self.settings.is_broker_active(BrokerName.CAPITAL.value):
            capital = self.settings.capital
            if not capital.api_key or not capital.identifier or not capital.password:
                missing.append("CAPITAL__API_KEY/CAPITAL__IDENTIFIER/CAPITAL__PASSWORD")

        if not missing:
            return
        if self.settings.environment.value == "production":
            raise ConfigurationError(f"Missing broker credentials: {', '.join(missing)}",
                                     config_field=",".join(missing), config_value=None)
        self.logger.warning("Active broker credentials not configured", missing=missing)

    def lifespan_services(self) -> List:
        services = [self.container.gateway_service()]
        if self.settings.reconciliation.enabled:
            services.append(self.container.reconciliation_sweep())
        if self.settings.is_broker_active(BrokerName.BINANCE.value) and self.settings.binance.position_stream_enabled:
            services.append(self.container.futures_position_stream())
        return services

    async def init_infrastructure(self):
        db_manager = self.container.db_manager()
        await db_manager.init()
        await db_manager.wait_for_ready(timeout=30)
        self.logger.info("Database initialized and verified ready")

    async def startup(self):
        """Initialize infrastructure, then start services in dependency order."""
        await self.init_infrastructure()

        if self.settings.monitoring.metrics_enabled:
            start_http_server(self.settings.monitoring.metrics_port, registry=self.container.prometheus_registry())
            self.logger.info("Metrics endpoint started", port=self.settings.monitoring.metrics_port)

        for service in self.lifespan_services():
            await service.start()
            self._started_services.append(service)
        self.logger.info("All services started", services=[s.service_name for s in self._started_services])

    async def shutdown(self):
        """Gracefully shutdown application."""
        self.logger.info("Shutting down trade gateway...")
        for service in reversed(self._started_services):
            await service.stop()
        self._started_services.clear()

        for client in self.container.http_clients():
            try:
                await client.close()
            except Exception as e:
                self.logger.warning("Error closing broker client", client=type(client).__name__, error=str(e))
        try:
            await self.container.redis_client().aclose()
        except Exception as e:
            self.logger.warning("Error closing redis client", error=str(e))
        try:
            await self.container.db_manager().shutdown()
        except Exception as e:
            self.logger.error("Error during database shutdown", error=str(e))
        self.logger.info("Trade gateway shutdown complete.")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        self.logger.info("Received shutdown signal", signal=signal.strsignal(signum))
        self._shutdown_event.set()

    async def run(self):
        """Run the application until shutdown."""
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        try:
            await self.startup()
            self.logger.info("Application is now running. Press Ctrl+C to exit.")
            await self._shutdown_event.wait()
        finally:
            await self.shutdown()

    async def reconcile_once(self) -> Dict[str, int]:
        """Run a single reconciliation sweep without starting the services."""
        await self.init_infrastructure()
        try:
            engine = self.container.lifecycle_engine()
            await self.container.open_positions_cache().rebuild(engine.store)
            return await self.container.reconciliation_sweep().run_once()
        finally:
            await self.shutdown()

    async def open_positions(self, broker: Optional[str] = None, strategy: Optional[str] = None,
                             market: Optional[str] = None) -> List[Position]:
        await self.init_infrastructure()
        try:
            store = self.container.position_store()
            return await store.find(PositionFilter(
                broker=BrokerName(broker) if broker else None,
                strategy=strategy,
                market=MarketType(market) if market else None,
                open=True,
            ))
        finally:
            await self.shutdown()


async def main():
    """Application entry point"""
    try:
        app = ApplicationOrchestrator()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    await app.run()


if __name__ == "__main__":
    asyncio.run(main())
