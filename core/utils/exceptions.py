# Structured exception hierarchy for the trade gateway
#
# The executor redelivers TransientError subclasses (and unknown exceptions)
# up to its redelivery limit and dead-letters PermanentError subclasses at once.

from typing import Dict, Any, Optional
from datetime import datetime, timezone


class GatewayException(Exception):
    """Base exception for all gateway specific errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)


class TransientError(GatewayException):
    """Failure that may succeed on redelivery"""
    pass


class PermanentError(GatewayException):
    """Failure that no redelivery can fix"""
    pass


# Authentication Errors
class AuthenticationError(PermanentError):
    """Broker login failed - fatal for the current operation"""

    def __init__(self, message: str, auth_provider: str, **kwargs):
        super().__init__(message, **kwargs)
        self.auth_provider = auth_provider


# Broker Integration Errors
class BrokerError(TransientError):
    """Base class for broker integration errors"""

    def __init__(self, message: str, broker: str, **kwargs):
        super().__init__(message, **kwargs)
        self.broker = broker


class BrokerConnectionError(BrokerError):
    """Broker connection failures - network or service issues"""
    pass


class BrokerTimeoutError(BrokerError):
    """Broker call exceeded its deadline"""
    pass


class BrokerAPIError(BrokerError):
    """Broker API returned an error payload"""

    def __init__(self, message: str, broker: str, status_code: Optional[int] = None,
                 api_error_code: Optional[str] = None,
                 api_response: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, broker, **kwargs)
        self.status_code = status_code
        self.api_error_code = api_error_code
        self.api_response = api_response or {}


class RateLimitError(BrokerAPIError):
    """Broker rejected the call because of request weight limits"""
    pass


class OrderNotFoundError(BrokerAPIError):
    """Broker does not (yet) know the requested order"""

    def __init__(self, message: str, broker: str, order_id: Optional[str] = None, **kwargs):
        super().__init__(message, broker, **kwargs)
        self.order_id = order_id


# Executor control signals
class InstrumentLockedError(TransientError):
    """Another task currently holds the instrument; redeliver later"""

    def __init__(self, instrument: str, **kwargs):
        super().__init__(f"Instrument {instrument} is locked", **kwargs)
        self.instrument = instrument


# Order Management Errors
class OrderError(PermanentError):
    """Order rejected or malformed - should not be retried"""

    def __init__(self, message: str, order_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.order_id = order_id


class PositionNotRecordedError(OrderError):
    """Broker order placed but its position record could not be stored"""
    pass


class UnsupportedOperationError(PermanentError):
    """Venue cannot perform the requested operation (e.g. spot short selling)"""

    def __init__(self, message: str, venue: str, **kwargs):
        super().__init__(message, **kwargs)
        self.venue = venue


# Infrastructure Errors
class StreamingError(TransientError):
    """Task transport errors"""

    def __init__(self, message: str, topic: Optional[str] = None,
                 operation: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.topic = topic
        self.operation = operation


# Configuration Errors
class ConfigurationError(PermanentError):
    """Configuration validation errors"""

    def __init__(self, message: str, config_field: str, config_value: Any,
                 **kwargs):
        super().__init__(message, **kwargs)
        self.config_field = config_field
        self.config_value = config_value


# Validation Errors
class ValidationError(PermanentError):
    """Data validation errors"""

    def __init__(self, message: str, field: str, value: Any,
                 expected_type: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.expected_type = expected_type
