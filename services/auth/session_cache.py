"""TTL-bound cache of broker session credentials with single-flight renewal."""

import asyncio
from datetime import timedelta
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable

from core.logging import get_logger
from core.trading.interfaces import SessionTokenRepository
from core.trading.models import SessionToken
from core.utils.clock import Clock, SystemClock, to_epoch_millis
from core.utils.exceptions import AuthenticationError

logger = get_logger(__name__, component="session_cache")


@runtime_checkable
class Authenticator(Protocol):
    """Performs a broker login exchange.

    Returns ``(security_token, client_session_token)`` or raises
    ``AuthenticationError``.
    """

    async def login(self) -> Tuple[str, str]:
        ...


class SessionCache:
    """Hands out cached broker sessions, logging in again once the TTL lapses.

    Renewal is serialized per broker: concurrent callers that find the token
    expired wait on the same lock and reuse the token the first caller
    obtained. A failed login leaves both the in-memory entry and the persisted
    row untouched.
    """

    def __init__(
        self,
        repository: SessionTokenRepository,
        authenticators: Dict[str, Authenticator],
        ttl: timedelta = timedelta(minutes=10),
        clock: Optional[Clock] = None,
    ):
        self.repository = repository
        self.authenticators = authenticators
        self.ttl = ttl
        self.clock = clock or SystemClock()
        self._tokens: Dict[str, SessionToken] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._loaded: set[str] = set()

    def _lock_for(self, broker: str) -> asyncio.Lock:
        lock = self._locks.get(broker)
        if lock is None:
            lock = self._locks[broker] = asyncio.Lock()
        return lock

    def _is_valid(self, token: Optional[SessionToken]) -> bool:
        if token is None:
            return False
        age_ms = to_epoch_millis(self.clock.now()) - token.issued_at_ms
        return 0 <= age_ms < self.ttl.total_seconds() * 1000

    async def get_session(self, broker: str) -> SessionToken:
        token = self._tokens.get(broker)
        if self._is_valid(token):
            return token

        async with self._lock_for(broker):
            # Another caller may have renewed while we waited
            token = self._tokens.get(broker)
            if self._is_valid(token):
                return token

            if broker not in self._loaded:
                self._loaded.add(broker)
                stored = await self.repository.load(broker)
                if self._is_valid(stored):
                    self._tokens[broker] = stored
                    logger.debug("Reusing persisted session", broker=broker)
                    return stored

            return await self._renew(broker)

    async def _renew(self, broker: str) -> SessionToken:
        authenticator = self.authenticators.get(broker)
        if authenticator is None:
            raise AuthenticationError(f"No authenticator configured for {broker}", auth_provider=broker)

        security_token, client_session_token = await authenticator.login()
        token = SessionToken(
            broker=broker,
            security_token=security_token,
            client_session_token=client_session_token,
            issued_at_ms=to_epoch_millis(self.clock.now()),
        )
        await self.repository.upsert(token)
        self._tokens[broker] = token
        logger.info("Broker session renewed", broker=broker, issued_at_ms=token.issued_at_ms)
        return token

    def invalidate(self, broker: str, token: Optional[SessionToken] = None) -> None:
        """Drop the cached session, optionally only if it is still ``token``."""
        current = self._tokens.get(broker)
        if current is None:
            return
        if token is not None and current.issued_at_ms != token.issued_at_ms:
            return
        del self._tokens[broker]
        logger.info("Broker session invalidated", broker=broker)
