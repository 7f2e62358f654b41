"""
Monitoring and alerting components for the trade gateway
"""

from .alerting import (
    Alert,
    AlertSeverity,
    AlertCategory,
    AlertChannel,
    AlertManager,
    EmailChannel,
    LoggingChannel,
)
from .prometheus_metrics import GatewayMetrics

__all__ = [
    'Alert',
    'AlertSeverity',
    'AlertCategory',
    'AlertChannel',
    'AlertManager',
    'EmailChannel',
    'LoggingChannel',
    'GatewayMetrics',
]
