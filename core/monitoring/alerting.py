"""
Out-of-band operator alerts for the trade gateway.

Alerts are best-effort: ``AlertManager.send_alert`` never raises, so a failing
mail server can not abort the trading operation that triggered the alert.
"""

from core.logging import get_monitoring_logger_safe
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.mime.text import MIMEText
from enum import Enum
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field

import aiosmtplib

from core.config.settings import AlertSettings
from core.utils.ids import generate_event_id

logger = get_monitoring_logger_safe("alerting")


class AlertSeverity(str, Enum):
    """Alert severity levels"""
    CRITICAL = "critical"      # Trading disrupted
    HIGH = "high"              # Manual intervention needed
    MEDIUM = "medium"          # Degraded result recorded, follow up
    LOW = "low"
    INFO = "info"


SEVERITY_ORDER = [AlertSeverity.INFO, AlertSeverity.LOW, AlertSeverity.MEDIUM,
                  AlertSeverity.HIGH, AlertSeverity.CRITICAL]


class AlertCategory(str, Enum):
    """Alert categories for routing and filtering"""
    AUTHENTICATION = "authentication"
    TRADING = "trading"
    SETTLEMENT = "settlement"
    RECONCILIATION = "reconciliation"
    SYSTEM = "system"


@dataclass
class Alert:
    """Alert message structure"""

    title: str
    message: str
    severity: AlertSeverity
    category: AlertCategory
    component: str
    broker: str = "unknown"

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    alert_id: str = field(default_factory=lambda: f"alert_{generate_event_id()}")
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> str:
        return f"[{self.severity.value.upper()}] {self.broker}: {self.title}"

    def body(self) -> str:
        lines = [self.message, "", f"component: {self.component}", f"category: {self.category.value}",
                 f"time: {self.timestamp.isoformat()}"]
        lines.extend(f"{key}: {value}" for key, value in self.details.items())
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "component": self.component,
            "broker": self.broker,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


class AlertChannel(ABC):
    """Abstract base class for alert delivery channels"""

    @abstractmethod
    async def send_alert(self, alert: Alert) -> bool:
        """
        Send alert through this channel.

        Returns:
            True if alert was sent successfully, False otherwise
        """

    @abstractmethod
    def supports_severity(self, severity: AlertSeverity) -> bool:
        """Check if this channel supports the given severity level"""


class LoggingChannel(AlertChannel):
    """Logging-based alert channel, always installed"""

    def __init__(self, logger_name: str = "alerts"):
        self.logger = get_monitoring_logger_safe(logger_name)

    async def send_alert(self, alert: Alert) -> bool:
        log_method = {
            AlertSeverity.CRITICAL: self.logger.critical,
            AlertSeverity.HIGH: self.logger.error,
            AlertSeverity.MEDIUM: self.logger.warning,
        }.get(alert.severity, self.logger.info)
        log_method(
            f"ALERT [{alert.category.value.upper()}]: {alert.title}",
            alert_message=alert.message,
            alert_id=alert.alert_id,
            component=alert.component,
            broker=alert.broker,
            severity=alert.severity.value,
            details=alert.details,
        )
        return True

    def supports_severity(self, severity: AlertSeverity) -> bool:
        return True


class EmailChannel(AlertChannel):
    """SMTP alert channel backed by aiosmtplib"""

    def __init__(self, settings: AlertSettings, min_severity: AlertSeverity = AlertSeverity.MEDIUM):
        self.settings = settings
        self.min_severity = min_severity

    def _build_message(self, alert: Alert) -> MIMEText:
        msg = MIMEText(alert.body(), "plain")
        msg["Subject"] = alert.subject
        msg["From"] = self.settings.sender
        msg["To"] = ", ".join(self.settings.recipients)
        return msg

    async def send_alert(self, alert: Alert) -> bool:
        if not self.settings.recipients:
            return False
        try:
            await aiosmtplib.send(
                self._build_message(alert),
                hostname=self.settings.smtp_host,
                port=self.settings.smtp_port,
                username=self.settings.smtp_username or None,
                password=self.settings.smtp_password or None,
                start_tls=self.settings.smtp_use_tls,
            )
            return True
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email alert", alert_id=alert.alert_id, error=str(e))
            return False

    def supports_severity(self, severity: AlertSeverity) -> bool:
        return SEVERITY_ORDER.index(severity) >= SEVERITY_ORDER.index(self.min_severity)


class AlertManager:
    """Central alert management and routing"""

    def __init__(self, settings: Optional[AlertSettings] = None, channels: Optional[List[AlertChannel]] = None):
        self.settings = settings or AlertSettings()
        self.channels: List[AlertChannel] = []
        self.alert_history: List[Alert] = []
        self.suppressed_alerts: Dict[str, datetime] = {}
        self._stats = {
            "alerts_sent": 0,
            "alerts_suppressed": 0,
            "alerts_failed": 0,
            "last_alert_time": None
        }

        if channels is None:
            channels = [LoggingChannel("trade_gateway.alerts")]
            if self.settings.email_enabled:
                channels.append(EmailChannel(self.settings))
        for channel in channels:
            self.add_channel(channel)

    def add_channel(self, channel: AlertChannel) -> None:
        self.channels.append(channel)
        logger.debug("Added alert channel", alert_channel=type(channel).__name__)

    async def send_alert(
        self,
        title: str,
        message: str,
        severity: AlertSeverity = AlertSeverity.HIGH,
        category: AlertCategory = AlertCategory.TRADING,
        component: str = "gateway",
        broker: str = "unknown",
        **details: Any,
    ) -> bool:
        """
        Send alert through all appropriate channels.

        Returns:
            True if alert was sent through at least one channel
        """
        alert = Alert(
            title=title,
            message=message,
            severity=severity,
            category=category,
            component=component,
            broker=broker,
            details=details,
        )
        return await self.send_alert_object(alert)

    async def send_alert_object(self, alert: Alert) -> bool:
        if self._is_suppressed(alert):
            self._stats["alerts_suppressed"] += 1
            logger.debug("Alert suppressed", alert_id=alert.alert_id)
            return False

        success_count = 0
        for channel in self.channels:
            if not channel.supports_severity(alert.severity):
                continue
            try:
                if await channel.send_alert(alert):
                    success_count += 1
            except Exception as e:
                logger.error("Alert channel failed", alert_channel=type(channel).__name__, error=str(e))

        if success_count == 0:
            self._stats["alerts_failed"] += 1
            logger.error("Failed to send alert through any channel", alert_id=alert.alert_id)
            return False

        self._stats["alerts_sent"] += 1
        self._stats["last_alert_time"] = alert.timestamp.isoformat()
        self.alert_history.append(alert)
        self.suppressed_alerts[self._suppression_key(alert)] = alert.timestamp
        if len(self.alert_history) > 1000:
            self.alert_history = self.alert_history[-1000:]
        return True

    @staticmethod
    def _suppression_key(alert: Alert) -> str:
        return f"{alert.component}:{alert.category.value}:{alert.title}:{alert.message}"

    def _is_suppressed(self, alert: Alert) -> bool:
        last_alert_time = self.suppressed_alerts.get(self._suppression_key(alert))
        if last_alert_time is None:
            return False
        elapsed = (alert.timestamp - last_alert_time).total_seconds()
        return elapsed < self.settings.suppression_window_seconds

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "active_channels": len(self.channels),
            "suppressed_keys": len(self.suppressed_alerts),
            "history_size": len(self.alert_history)
        }
