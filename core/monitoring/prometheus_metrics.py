"""
Prometheus metrics for the trade gateway.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from typing import Optional


class GatewayMetrics:
    """Counters, gauges and histograms exposed by the gateway"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Executor
        self.tasks_processed = Counter(
            'gateway_tasks_processed_total',
            'Tasks handled by the per-instrument executor',
            ['kind', 'outcome'],
            registry=self.registry
        )
        self.lock_rejections = Counter(
            'gateway_instrument_lock_rejections_total',
            'Deliveries requeued because the instrument was locked',
            ['instrument'],
            registry=self.registry
        )
        self.tasks_dead_lettered = Counter(
            'gateway_tasks_dead_lettered_total',
            'Tasks abandoned after exhausting redeliveries',
            ['kind'],
            registry=self.registry
        )
        self.instruments_locked = Gauge(
            'gateway_instruments_locked',
            'Instruments currently held by an in-flight handler',
            registry=self.registry
        )

        # Settlement
        self.settlement_outcomes = Counter(
            'gateway_settlement_outcomes_total',
            'Settlement resolutions by tier',
            ['broker', 'tier'],
            registry=self.registry
        )

        # Positions
        self.positions_opened = Counter(
            'gateway_positions_opened_total',
            'Positions opened',
            ['broker', 'market', 'side'],
            registry=self.registry
        )
        self.positions_closed = Counter(
            'gateway_positions_closed_total',
            'Positions closed',
            ['broker', 'market', 'reason'],
            registry=self.registry
        )
        self.realized_pnl = Gauge(
            'gateway_realized_pnl',
            'Cumulative realized P&L since process start',
            ['broker', 'strategy'],
            registry=self.registry
        )
        self.open_positions = Gauge(
            'gateway_open_positions',
            'Locally open positions per instrument',
            ['instrument'],
            registry=self.registry
        )

        # Reconciliation
        self.reconciliation_runs = Counter(
            'gateway_reconciliation_runs_total',
            'Reconciliation sweeps executed',
            ['venue', 'status'],
            registry=self.registry
        )

        # Broker calls
        self.broker_latency = Histogram(
            'gateway_broker_call_latency_seconds',
            'Latency of broker REST calls',
            ['broker', 'operation'],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry
        )
