from unittest.mock import AsyncMock, patch

import aiosmtplib
import pytest

from core.config.settings import AlertSettings
from core.monitoring.alerting import (
    Alert,
    AlertCategory,
    AlertManager,
    AlertSeverity,
    EmailChannel,
    LoggingChannel,
)


class FlakyChannel(LoggingChannel):
    def __init__(self):
        super().__init__("tests.alerts")
        self.sent = []

    async def send_alert(self, alert: Alert) -> bool:
        self.sent.append(alert)
        raise RuntimeError("channel down")


class TestAlertManager:
    @pytest.mark.asyncio
    async def test_duplicate_alert_is_suppressed(self):
        manager = AlertManager(AlertSettings(suppression_window_seconds=300))

        assert await manager.send_alert("Broker close failed", "ETHUSDT close rejected") is True
        assert await manager.send_alert("Broker close failed", "ETHUSDT close rejected") is False
        assert await manager.send_alert("Broker close failed", "BTCUSDT close rejected") is True

        stats = manager.get_stats()
        assert stats["alerts_sent"] == 2
        assert stats["alerts_suppressed"] == 1

    @pytest.mark.asyncio
    async def test_channel_failure_does_not_raise(self):
        flaky = FlakyChannel()
        manager = AlertManager(channels=[flaky])

        assert await manager.send_alert("Position not recorded", "db down", severity=AlertSeverity.CRITICAL) is False
        assert len(flaky.sent) == 1
        assert manager.get_stats()["alerts_failed"] == 1

    def test_email_only_installed_when_enabled(self):
        assert [type(c) for c in AlertManager(AlertSettings()).channels] == [LoggingChannel]
        enabled = AlertManager(AlertSettings(email_enabled=True, recipients=["ops@example.com"]))
        assert [type(c) for c in enabled.channels] == [LoggingChannel, EmailChannel]


class TestEmailChannel:
    def _alert(self, severity=AlertSeverity.HIGH):
        return Alert(title="Settlement unresolved on open", message="placeholder recorded",
                     severity=severity, category=AlertCategory.SETTLEMENT, component="lifecycle",
                     broker="binance", details={"position_id": 7})

    @pytest.mark.asyncio
    async def test_sends_through_smtp(self):
        settings = AlertSettings(email_enabled=True, smtp_host="smtp.test", smtp_port=2525,
                                 recipients=["ops@example.com"], smtp_use_tls=False)
        channel = EmailChannel(settings)

        with patch("core.monitoring.alerting.aiosmtplib.send", new_callable=AsyncMock) as send:
            assert await channel.send_alert(self._alert()) is True

        message = send.call_args.args[0]
        assert message["Subject"] == "[HIGH] binance: Settlement unresolved on open"
        assert message["To"] == "ops@example.com"
        assert "position_id: 7" in message.get_payload()
        assert send.call_args.kwargs["hostname"] == "smtp.test"
        assert send.call_args.kwargs["port"] == 2525

    @pytest.mark.asyncio
    async def test_smtp_error_reports_failure(self):
        channel = EmailChannel(AlertSettings(recipients=["ops@example.com"]))

        with patch("core.monitoring.alerting.aiosmtplib.send",
                   new_callable=AsyncMock, side_effect=aiosmtplib.SMTPException("refused")):
            assert await channel.send_alert(self._alert()) is False

    def test_low_severity_not_emailed(self):
        channel = EmailChannel(AlertSettings())

        assert channel.supports_severity(AlertSeverity.MEDIUM)
        assert not channel.supports_severity(AlertSeverity.LOW)
