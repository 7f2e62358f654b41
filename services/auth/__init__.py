"""Broker session management: TTL cache, persistence and login exchanges."""

from .session_cache import Authenticator, SessionCache
from .token_repository import SqlSessionTokenRepository
from .capital_authenticator import CapitalAuthenticator

__all__ = [
    "Authenticator",
    "SessionCache",
    "SqlSessionTokenRepository",
    "CapitalAuthenticator",
]
