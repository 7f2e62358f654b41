# Dependency injection container for the trade gateway
from datetime import timedelta
from typing import List

from dependency_injector import containers, providers
import redis.asyncio as redis
from prometheus_client import CollectorRegistry

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.monitoring.alerting import AlertManager
from core.monitoring.prometheus_metrics import GatewayMetrics
from core.streaming.kafka_transport import KafkaTaskTransport
from core.streaming.task_transport import LocalTaskTransport
from core.trading.models import BrokerName
from services.auth import CapitalAuthenticator, SessionCache, SqlSessionTokenRepository
from services.brokers.binance import BinanceFuturesClient, BinanceSpotClient
from services.brokers.capital import CapitalClient
from services.executor import InstrumentExecutor, InstrumentLockRegistry, JitteredThrottle
from services.gateway import TradeGatewayService
from services.lifecycle import (
    BinanceFuturesVenue,
    BinanceSpotVenue,
    CapitalVenue,
    PositionLifecycleEngine,
    RedisNotificationSink,
    Venue,
)
from services.positions import OpenPositionsCache, SqlHistoryStore, SqlPositionStore
from services.reconciliation import FuturesPositionStream, ReconciliationSweep
from services.settlement import SettlementResolver


def build_venues(settings: Settings, spot_venue: Venue, futures_venue: Venue, capital_venue: Venue) -> List[Venue]:
    """Venues of the active brokers only."""
    venues: List[Venue] = []
    if settings.is_broker_active(BrokerName.BINANCE.value):
        venues.extend([spot_venue, futures_venue])
    if settings.is_broker_active(BrokerName.CAPITAL.value):
        venues.append(capital_venue)
    return venues


class AppContainer(containers.DeclarativeContainer):
    """Application dependency injection container"""

    # Configuration
    settings = providers.Singleton(Settings)

    # --- Observability ---
    prometheus_registry = providers.Singleton(CollectorRegistry)
    metrics = providers.Singleton(GatewayMetrics, registry=prometheus_registry)
    alert_manager = providers.Singleton(AlertManager, settings=settings.provided.alerts)

    # Database with environment awareness
    db_manager = providers.Singleton(
        DatabaseManager,
        db_url=settings.provided.database.postgres_url,
        environment=settings.provided.environment,
        schema_management=settings.provided.database.schema_management,
        pool_size=settings.provided.database.pool_size,
        max_overflow=settings.provided.database.max_overflow,
    )

    # Redis pub/sub for dashboard notifications
    redis_client = providers.Singleton(
        redis.from_url,
        settings.provided.redis.url
    )
    notifier = providers.Singleton(
        RedisNotificationSink,
        redis_client=redis_client,
        channel=settings.provided.redis.notifications_channel,
    )

    # --- Persistence ---
    position_store = providers.Singleton(SqlPositionStore, db_manager=db_manager)
    history_store = providers.Singleton(SqlHistoryStore, db_manager=db_manager)
    token_repository = providers.Singleton(SqlSessionTokenRepository, db_manager=db_manager)
    open_positions_cache = providers.Singleton(OpenPositionsCache)

    # --- Broker sessions and clients ---
    capital_authenticator = providers.Singleton(CapitalAuthenticator, settings=settings.provided.capital)
    session_cache = providers.Singleton(
        SessionCache,
        repository=token_repository,
        authenticators=providers.Dict(capital=capital_authenticator),
        ttl=providers.Factory(timedelta, minutes=settings.provided.capital.session_ttl_minutes),
    )
    binance_spot_client = providers.Singleton(
        BinanceSpotClient, settings=settings.provided.binance, metrics=metrics
    )
    binance_futures_client = providers.Singleton(
        BinanceFuturesClient, settings=settings.provided.binance, metrics=metrics
    )
    capital_client = providers.Singleton(
        CapitalClient, settings=settings.provided.capital, session_cache=session_cache, metrics=metrics
    )

    # --- Venues ---
    binance_spot_venue = providers.Singleton(
        BinanceSpotVenue, client=binance_spot_client, fee_factor=settings.provided.binance.spot_fee_factor
    )
    binance_futures_venue = providers.Singleton(
        BinanceFuturesVenue,
        client=binance_futures_client,
        fee_factor=settings.provided.binance.futures_fee_factor,
        default_leverage=settings.provided.binance.default_leverage,
    )
    capital_venue = providers.Singleton(
        CapitalVenue, client=capital_client, fee_factor=settings.provided.capital.fee_factor
    )
    venues = providers.Singleton(
        build_venues,
        settings=settings,
        spot_venue=binance_spot_venue,
        futures_venue=binance_futures_venue,
        capital_venue=capital_venue,
    )

    # --- Core ---
    # One registry shared by every entry point: the exclusivity unit is the instrument
    instrument_locks = providers.Singleton(InstrumentLockRegistry, metrics=metrics)
    settlement_resolver = providers.Singleton(
        SettlementResolver, settings=settings.provided.settlement, metrics=metrics
    )
    lifecycle_engine = providers.Singleton(
        PositionLifecycleEngine,
        venues=venues,
        store=position_store,
        history=history_store,
        resolver=settlement_resolver,
        cache=open_positions_cache,
        notifier=notifier,
        alerts=alert_manager,
        metrics=metrics,
        utc_offset_hours=settings.provided.reporting_utc_offset_hours,
        locks=instrument_locks,
    )

    throttle = providers.Singleton(
        JitteredThrottle,
        base_delay_ms=settings.provided.executor.base_delay_ms,
        jitter_ratio=settings.provided.executor.jitter_ratio,
    )
    local_executor = providers.Singleton(
        InstrumentExecutor,
        transport=providers.Singleton(LocalTaskTransport),
        locks=instrument_locks,
        throttle=throttle,
        settings=settings.provided.executor,
        metrics=metrics,
    )
    task_publisher = providers.Singleton(
        KafkaTaskTransport, config=settings.provided.redpanda, consume=False
    )
    durable_executor = providers.Singleton(
        InstrumentExecutor,
        transport=providers.Singleton(KafkaTaskTransport, config=settings.provided.redpanda),
        locks=instrument_locks,
        throttle=throttle,
        settings=settings.provided.executor,
        metrics=metrics,
    )

    # --- Services ---
    gateway_service = providers.Singleton(
        TradeGatewayService,
        engine=lifecycle_engine,
        cache=open_positions_cache,
        local_executor=local_executor,
        durable_executor=durable_executor,
    )
    reconciliation_sweep = providers.Singleton(
        ReconciliationSweep,
        engine=lifecycle_engine,
        locks=instrument_locks,
        settings=settings.provided.reconciliation,
        alerts=alert_manager,
        metrics=metrics,
    )
    futures_position_stream = providers.Singleton(
        FuturesPositionStream,
        client=binance_futures_client,
        venue=binance_futures_venue,
        engine=lifecycle_engine,
        cache=open_positions_cache,
        locks=instrument_locks,
        binance_settings=settings.provided.binance,
        reconnection=settings.provided.reconnection,
        reconciliation=settings.provided.reconciliation,
    )

    # Broker HTTP clients closed on shutdown
    http_clients = providers.List(
        binance_spot_client,
        binance_futures_client,
        capital_client,
        capital_authenticator,
    )
