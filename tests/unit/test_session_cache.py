import asyncio
from datetime import timedelta

import pytest

from core.trading.models import SessionToken
from core.utils.clock import to_epoch_millis
from core.utils.exceptions import AuthenticationError
from services.auth.session_cache import SessionCache
from tests.mocks.stores import InMemoryTokenRepository


class CountingAuthenticator:
    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.calls = 0
        self.fail = fail
        self.delay = delay

    async def login(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise AuthenticationError("invalid credentials", auth_provider="capital")
        return f"security-{self.calls}", f"cst-{self.calls}"


def make_cache(clock, repository=None, authenticator=None, ttl_minutes=60):
    return SessionCache(
        repository=repository or InMemoryTokenRepository(),
        authenticators={"capital": authenticator or CountingAuthenticator()},
        ttl=timedelta(minutes=ttl_minutes),
        clock=clock,
    )


@pytest.mark.asyncio
async def test_second_call_within_ttl_returns_cached_token(clock):
    authenticator = CountingAuthenticator()
    cache = make_cache(clock, authenticator=authenticator)

    first = await cache.get_session("capital")
    clock.advance(59)
    second = await cache.get_session("capital")

    assert second == first
    assert second.issued_at_ms == first.issued_at_ms
    assert authenticator.calls == 1


@pytest.mark.asyncio
async def test_expired_token_triggers_exactly_one_login(clock):
    authenticator = CountingAuthenticator()
    repository = InMemoryTokenRepository()
    cache = make_cache(clock, repository=repository, authenticator=authenticator)

    first = await cache.get_session("capital")
    clock.advance(60 * 60)
    renewed = await cache.get_session("capital")

    assert authenticator.calls == 2
    assert renewed.issued_at_ms > first.issued_at_ms
    assert renewed.security_token == "security-2"
    assert repository.tokens["capital"] == renewed
    assert repository.upserts == 2


@pytest.mark.asyncio
async def test_concurrent_renewal_is_single_flight(clock):
    authenticator = CountingAuthenticator(delay=0.01)
    cache = make_cache(clock, authenticator=authenticator)

    tokens = await asyncio.gather(*(cache.get_session("capital") for _ in range(5)))

    assert authenticator.calls == 1
    assert len({t.security_token for t in tokens}) == 1


@pytest.mark.asyncio
async def test_valid_persisted_token_is_reused_after_restart(clock):
    stored = SessionToken(broker="capital", security_token="persisted", client_session_token="cst",
                          issued_at_ms=to_epoch_millis(clock.now()) - 60_000)
    authenticator = CountingAuthenticator()
    cache = make_cache(clock, repository=InMemoryTokenRepository(stored), authenticator=authenticator)

    token = await cache.get_session("capital")

    assert token.security_token == "persisted"
    assert authenticator.calls == 0


@pytest.mark.asyncio
async def test_login_failure_propagates_and_leaves_store_untouched(clock):
    repository = InMemoryTokenRepository()
    cache = make_cache(clock, repository=repository, authenticator=CountingAuthenticator(fail=True))

    with pytest.raises(AuthenticationError):
        await cache.get_session("capital")

    assert repository.upserts == 0
    assert repository.tokens == {}


@pytest.mark.asyncio
async def test_invalidate_forces_new_login(clock):
    authenticator = CountingAuthenticator()
    cache = make_cache(clock, authenticator=authenticator)

    token = await cache.get_session("capital")
    cache.invalidate("capital", token)
    renewed = await cache.get_session("capital")

    assert authenticator.calls == 2
    assert renewed.security_token != token.security_token


@pytest.mark.asyncio
async def test_invalidate_with_stale_token_keeps_newer_session(clock):
    authenticator = CountingAuthenticator()
    cache = make_cache(clock, authenticator=authenticator)

    stale = await cache.get_session("capital")
    cache.invalidate("capital", stale)
    clock.advance(1)
    current = await cache.get_session("capital")
    cache.invalidate("capital", stale)

    assert await cache.get_session("capital") == current
    assert authenticator.calls == 2


@pytest.mark.asyncio
async def test_unknown_broker_raises_authentication_error(clock):
    cache = make_cache(clock)

    with pytest.raises(AuthenticationError):
        await cache.get_session("binance")
