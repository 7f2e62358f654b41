# Enhanced structured logging with multi-channel support
import sys
import logging
import logging.handlers
from pathlib import Path
from typing import Dict, Optional
import structlog

from core.config.settings import Settings
from .channels import (
    LogChannel,
    get_channel_for_component,
    get_channel_config,
    create_log_directory_structure,
)

# Global logger manager instance
_logger_manager: Optional['EnhancedLoggerManager'] = None


class ChannelFilter(logging.Filter):
    """Route records to a handler only if they carry the matching ``channel``.

    Records without a channel are accepted when the logger name starts with one
    of ``allowed_logger_prefixes`` (third-party libraries).
    """

    def __init__(self, expected_channel: str, allowed_logger_prefixes: Optional[list[str]] = None):
        super().__init__()
        self.expected_channel = expected_channel
        self.allowed_logger_prefixes = allowed_logger_prefixes or []

    def filter(self, record: logging.LogRecord) -> bool:
        ch = getattr(record, "channel", None)
        if ch is None and isinstance(record.msg, dict):
            ch = record.msg.get("channel")
        if ch is not None:
            return str(ch) == self.expected_channel
        name = getattr(record, "name", "")
        return any(name.startswith(prefix) for prefix in self.allowed_logger_prefixes)


def _foreign_pre_chain() -> list:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


class EnhancedLoggerManager:
    """Logging manager with multi-channel support and configurable formats."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.channel_handlers: Dict[LogChannel, logging.Handler] = {}
        self.configured_loggers: Dict[str, structlog.BoundLogger] = {}
        self._setup_logging()

    def _setup_logging(self) -> None:
        if self.settings.logging.file_enabled:
            create_log_directory_structure(self.settings.logs_dir)

        self._setup_console_logging()

        if self.settings.logging.file_enabled:
            self._setup_file_logging()
            if self.settings.logging.multi_channel_enabled:
                self._setup_multi_channel_logging()

        self._configure_structlog()

    @property
    def _level(self) -> int:
        return getattr(logging, self.settings.logging.level.upper())

    def _setup_console_logging(self) -> None:
        root_logger = logging.getLogger()
        root_logger.setLevel(self._level)
        if not self.settings.logging.console_enabled:
            return

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self._level)
        console_processor = (
            structlog.processors.JSONRenderer()
            if self.settings.logging.console_json_format
            else structlog.dev.ConsoleRenderer()
        )
        console_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=console_processor,
                foreign_pre_chain=_foreign_pre_chain(),
            )
        )
        root_logger.addHandler(console_handler)

    def _file_formatter(self) -> structlog.stdlib.ProcessorFormatter:
        file_processor = (
            structlog.processors.JSONRenderer()
            if self.settings.logging.json_format
            else structlog.processors.KeyValueRenderer(key_order=["event", "level", "timestamp"])
        )
        return structlog.stdlib.ProcessorFormatter(
            processor=file_processor,
            foreign_pre_chain=_foreign_pre_chain(),
        )

    def _setup_file_logging(self) -> None:
        """Setup the combined application log file."""
        log_file = Path(self.settings.logs_dir) / "trade_gateway.log"
        root_logger = logging.getLogger()

        for handler in root_logger.handlers:
            if (isinstance(handler, logging.handlers.RotatingFileHandler) and
                    Path(handler.baseFilename) == log_file.resolve()):
                return

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=self._parse_size(self.settings.logging.file_max_size),
            backupCount=self.settings.logging.file_backup_count,
            encoding="utf-8"
        )
        file_handler.setLevel(self._level)
        file_handler.setFormatter(self._file_formatter())
        root_logger.addHandler(file_handler)

    def _setup_multi_channel_logging(self) -> None:
        """Setup multi-channel logging with dedicated files."""
        for channel in LogChannel:
            self.channel_handlers[channel] = self._create_channel_handler(channel)

        # ERROR channel sees every ERROR+ record regardless of channel
        error_handler = self.channel_handlers[LogChannel.ERROR]
        root_logger = logging.getLogger()
        if error_handler not in root_logger.handlers:
            root_logger.addHandler(error_handler)

        db_handler = self.channel_handlers[LogChannel.DATABASE]
        for name in ("sqlalchemy", "sqlalchemy.engine", "sqlalchemy.pool"):
            lg = logging.getLogger(name)
            if db_handler not in lg.handlers:
                lg.addHandler(db_handler)
            if lg.level == logging.NOTSET:
                lg.setLevel(logging.WARNING)
            lg.propagate = False

        app_handler = self.channel_handlers[LogChannel.APPLICATION]
        for name in ("aiokafka", "websockets", "httpx"):
            lg = logging.getLogger(name)
            if app_handler not in lg.handlers:
                lg.addHandler(app_handler)
            if lg.level == logging.NOTSET:
                lg.setLevel(logging.WARNING)

    def _create_channel_handler(self, channel: LogChannel) -> logging.Handler:
        config = get_channel_config(channel)
        handler = logging.handlers.RotatingFileHandler(
            filename=config.get_file_path(self.settings.logs_dir),
            maxBytes=self._parse_size(config.max_bytes),
            backupCount=config.backup_count,
            encoding="utf-8"
        )
        handler.setLevel(getattr(logging, config.level))
        handler.setFormatter(self._file_formatter())
        if channel != LogChannel.ERROR:
            prefixes = ["aiokafka", "websockets", "httpx"] if channel == LogChannel.APPLICATION else []
            handler.addFilter(ChannelFilter(expected_channel=channel.value, allowed_logger_prefixes=prefixes))
        return handler

    @staticmethod
    def _parse_size(size_str: str) -> int:
        """Parse size string (e.g., '100MB') to bytes."""
        size_str = size_str.upper()
        if size_str.endswith("B"):
            size_str = size_str[:-1]

        multipliers = {
            "K": 1024,
            "M": 1024 * 1024,
            "G": 1024 * 1024 * 1024,
        }
        for suffix, multiplier in multipliers.items():
            if size_str.endswith(suffix):
                return int(float(size_str[:-1]) * multiplier)
        return int(size_str)

    def _configure_structlog(self) -> None:
        """Configure structlog with the gateway processor chain."""
        settings = self.settings

        def add_standard_context(logger, name, event_dict):
            event_dict.setdefault('env', settings.environment.value)
            event_dict.setdefault('service', settings.app_name)
            event_dict.setdefault('version', settings.version)
            return event_dict

        keys_to_redact = {k.lower() for k in settings.logging.redact_keys}

        def redact_sensitive(logger, name, event_dict):
            """Redact sensitive fields from event dict recursively."""

            def _redact(obj):
                if isinstance(obj, dict):
                    return {
                        k: '[REDACTED]' if isinstance(k, str) and k.lower() in keys_to_redact else _redact(v)
                        for k, v in obj.items()
                    }
                if isinstance(obj, list):
                    return [_redact(v) for v in obj]
                return obj

            return _redact(event_dict)

        def normalize_error(logger, name, event_dict):
            if "error" in event_dict and "error_message" not in event_dict:
                event_dict["error_message"] = str(event_dict["error"])
            return event_dict

        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                add_standard_context,
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                normalize_error,
                structlog.processors.UnicodeDecoder(),
                redact_sensitive,
                # Defer final rendering to handlers via ProcessorFormatter
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str, component: Optional[str] = None) -> structlog.BoundLogger:
        """Get a structured logger for a component."""
        key = f"{name}:{component or ''}"
        if key in self.configured_loggers:
            return self.configured_loggers[key]

        logger = structlog.get_logger(name)
        if component:
            channel = get_channel_for_component(component)
            logger = logger.bind(component=component, channel=channel.value)

        self.configured_loggers[key] = logger
        return logger

    def get_channel_logger(self, name: str, channel: LogChannel) -> structlog.BoundLogger:
        return structlog.get_logger(name).bind(channel=channel.value)

    def shutdown(self) -> None:
        for handler in self.channel_handlers.values():
            handler.close()


def configure_enhanced_logging(settings: Settings) -> None:
    """Configure enhanced logging system once per process."""
    global _logger_manager
    if _logger_manager is None:
        _logger_manager = EnhancedLoggerManager(settings)


def get_enhanced_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance.

    Before ``configure_enhanced_logging`` runs (tests, one-off CLI calls) this
    returns a plain structlog logger with structlog's default configuration.
    """
    if _logger_manager is None:
        logger = structlog.get_logger(name)
        if component:
            logger = logger.bind(component=component)
        return logger
    return _logger_manager.get_logger(name, component)


def get_channel_logger(name: str, channel: LogChannel) -> structlog.BoundLogger:
    if _logger_manager is None:
        return structlog.get_logger(name).bind(channel=channel.value)
    return _logger_manager.get_channel_logger(name, channel)


def get_trading_logger(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.TRADING)


def get_settlement_logger(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.SETTLEMENT)


def get_reconciliation_logger(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.RECONCILIATION)


def get_audit_logger(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.AUDIT)


def get_monitoring_logger(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.MONITORING)


def get_error_logger(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.ERROR)


def get_database_logger(name: str) -> structlog.BoundLogger:
    return get_channel_logger(name, LogChannel.DATABASE)
