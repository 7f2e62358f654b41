"""
Logging channel definitions and configuration for the trade gateway.
Provides multi-channel logging with dedicated files for different components.
"""

from enum import Enum
from typing import Dict, Optional
from pathlib import Path
from dataclasses import dataclass


class LogChannel(str, Enum):
    """Logging channels for different components."""

    APPLICATION = "application"        # General application logs
    TRADING = "trading"                # Order placement and position lifecycle
    SETTLEMENT = "settlement"          # Fill resolution fallbacks
    RECONCILIATION = "reconciliation"  # Sweep and position stream
    DATABASE = "database"              # Database operations
    AUDIT = "audit"                    # Audit trail
    ERROR = "error"                    # Error logs
    MONITORING = "monitoring"          # Alerts and metrics


@dataclass
class ChannelConfig:
    """Configuration for a logging channel."""

    name: str
    filename: str
    level: str = "INFO"
    max_bytes: str = "50MB"
    backup_count: int = 5
    retention_days: Optional[int] = None

    def get_file_path(self, logs_dir: str) -> Path:
        """Get the full file path for this channel."""
        return Path(logs_dir) / self.filename


CHANNEL_CONFIGS: Dict[LogChannel, ChannelConfig] = {
    LogChannel.APPLICATION: ChannelConfig(
        name="application",
        filename="application.log",
        max_bytes="100MB",
        backup_count=10,
        retention_days=30
    ),
    LogChannel.TRADING: ChannelConfig(
        name="trading",
        filename="trading.log",
        backup_count=20,
        retention_days=365  # Trading ledger evidence
    ),
    LogChannel.SETTLEMENT: ChannelConfig(
        name="settlement",
        filename="settlement.log",
        backup_count=10,
        retention_days=90
    ),
    LogChannel.RECONCILIATION: ChannelConfig(
        name="reconciliation",
        filename="reconciliation.log",
        backup_count=10,
        retention_days=90
    ),
    LogChannel.DATABASE: ChannelConfig(
        name="database",
        filename="database.log",
        level="WARNING",
        retention_days=30
    ),
    LogChannel.AUDIT: ChannelConfig(
        name="audit",
        filename="audit.log",
        max_bytes="100MB",
        backup_count=50,
        retention_days=365
    ),
    LogChannel.ERROR: ChannelConfig(
        name="error",
        filename="error.log",
        level="ERROR",
        backup_count=20,
        retention_days=90
    ),
    LogChannel.MONITORING: ChannelConfig(
        name="monitoring",
        filename="monitoring.log",
        backup_count=10,
        retention_days=30
    ),
}


def get_channel_for_component(component: str) -> LogChannel:
    """Get the appropriate logging channel for a component."""
    component_mapping = {
        "lifecycle": LogChannel.TRADING,
        "executor": LogChannel.TRADING,
        "gateway": LogChannel.TRADING,
        "brokers": LogChannel.TRADING,
        "session_cache": LogChannel.TRADING,
        "settlement": LogChannel.SETTLEMENT,
        "reconciliation": LogChannel.RECONCILIATION,
        "position_stream": LogChannel.RECONCILIATION,
        "database": LogChannel.DATABASE,
        "positions": LogChannel.DATABASE,
        "redis": LogChannel.DATABASE,
        "streaming": LogChannel.APPLICATION,
        "alerts": LogChannel.MONITORING,
        "metrics": LogChannel.MONITORING,
        "audit": LogChannel.AUDIT,
    }

    return component_mapping.get(component, LogChannel.APPLICATION)


def get_channel_config(channel: LogChannel) -> ChannelConfig:
    """Get configuration for a specific channel."""
    return CHANNEL_CONFIGS[channel]


def create_log_directory_structure(logs_dir: str) -> None:
    """Create the logs directory structure."""
    logs_path = Path(logs_dir)
    logs_path.mkdir(parents=True, exist_ok=True)
    (logs_path / "archived").mkdir(exist_ok=True)
