import json
from typing import List

import pytest

from core.config.settings import ReconnectionSettings
from core.trading.models import BrokerName, ClosedProceeds, MarketType
from core.utils.clock import to_epoch_millis
from services.executor.locks import InstrumentLockRegistry
from services.lifecycle.engine import PositionLifecycleEngine
from services.reconciliation.position_stream import FuturesPositionStream, backoff_delay
from tests.mocks.brokers import FakeVenue


class FakeListenKeyClient:
    def __init__(self):
        self.created = 0
        self.keepalives: List[str] = []

    async def create_listen_key(self) -> str:
        self.created += 1
        return f"key-{self.created}"

    async def keepalive_listen_key(self, listen_key: str) -> None:
        self.keepalives.append(listen_key)


class FakeConnection:
    def __init__(self, messages):
        self.messages = list(messages)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.messages:
            raise StopAsyncIteration
        return self.messages.pop(0)


def account_update(symbol: str, amount: str, event_time_ms: int) -> str:
    return json.dumps({
        "e": "ACCOUNT_UPDATE",
        "E": event_time_ms,
        "T": event_time_ms,
        "a": {"m": "ORDER", "P": [{"s": symbol, "pa": amount, "ep": "0.0", "ps": "BOTH"}]},
    })


@pytest.fixture
def venue():
    return FakeVenue(BrokerName.BINANCE, MarketType.FUTURE)


@pytest.fixture
def locks():
    return InstrumentLockRegistry()


@pytest.fixture
def engine(venue, position_store, history_store, resolver, open_cache, clock):
    return PositionLifecycleEngine([venue], position_store, history_store, resolver, open_cache, clock=clock)


@pytest.fixture
def make_stream(venue, engine, open_cache, locks, test_settings, clock):
    def _create(connect=None, reconnection=None):
        return FuturesPositionStream(
            client=FakeListenKeyClient(),
            venue=venue,
            engine=engine,
            cache=open_cache,
            locks=locks,
            binance_settings=test_settings.binance,
            reconnection=reconnection,
            connect=connect,
            clock=clock,
        )

    return _create


def test_backoff_delay_grows_and_caps():
    settings = ReconnectionSettings(base_delay_seconds=1.0, backoff_multiplier=2.0, max_delay_seconds=5.0)

    assert [backoff_delay(n, settings) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


class TestAccountUpdates:
    @pytest.mark.asyncio
    async def test_flat_position_closes_local_records(self, make_stream, venue, position_store, open_cache,
                                                      make_position, clock):
        stored = position_store.add(make_position(buy_price=500.0))
        open_cache.increment("BTCUSDT")
        venue.proceeds["BTCUSDT"] = ClosedProceeds(notional=505.0, source="userTrades")
        clock.advance(30)
        stream = make_stream()

        keep_going = await stream.handle_message(account_update("BTCUSDT", "0", to_epoch_millis(clock.now())))

        assert keep_going is True
        closed = position_store.records[stored.id]
        assert closed.open is False
        assert closed.realized_pnl == pytest.approx(5.0)
        assert "BTCUSDT" not in open_cache

    @pytest.mark.asyncio
    async def test_non_zero_amount_is_ignored(self, make_stream, position_store, open_cache, make_position, clock):
        stored = position_store.add(make_position())
        open_cache.increment("BTCUSDT")

        await make_stream().handle_message(account_update("BTCUSDT", "0.010", to_epoch_millis(clock.now())))

        assert position_store.records[stored.id].open is True

    @pytest.mark.asyncio
    async def test_instrument_not_held_is_ignored(self, make_stream, venue, position_store, make_position, clock):
        position_store.add(make_position())

        await make_stream().handle_message(account_update("BTCUSDT", "0", to_epoch_millis(clock.now())))

        assert venue.backfill_calls == []
        assert position_store.mutations == []

    @pytest.mark.asyncio
    async def test_position_opened_after_event_survives(self, make_stream, position_store, open_cache,
                                                        make_position, clock):
        event_ms = to_epoch_millis(clock.now())
        clock.advance(5)
        stored = position_store.add(make_position(opened_at=clock.now()))
        open_cache.increment("BTCUSDT")

        await make_stream().handle_message(account_update("BTCUSDT", "0", event_ms))

        assert position_store.records[stored.id].open is True

    @pytest.mark.asyncio
    async def test_locked_instrument_is_left_to_the_sweep(self, make_stream, locks, position_store, open_cache,
                                                          make_position, clock):
        stored = position_store.add(make_position())
        open_cache.increment("BTCUSDT")
        locks.try_acquire("BTCUSDT")

        closed = await make_stream().close_instrument("BTCUSDT", to_epoch_millis(clock.now()))

        assert closed == 0
        assert position_store.records[stored.id].open is True
        assert locks.is_locked("BTCUSDT")

    @pytest.mark.asyncio
    async def test_listen_key_expiry_requests_reconnect(self, make_stream):
        stream = make_stream()

        assert await stream.handle_message(json.dumps({"e": "listenKeyExpired", "E": 1})) is False
        assert await stream.handle_message(json.dumps({"e": "ORDER_TRADE_UPDATE", "E": 1})) is True


class TestConnection:
    @pytest.mark.asyncio
    async def test_session_uses_listen_key_url(self, make_stream, position_store, open_cache, make_position,
                                               clock):
        stored = position_store.add(make_position())
        open_cache.increment("BTCUSDT")
        urls = []

        def connect(url):
            urls.append(url)
            return FakeConnection([account_update("BTCUSDT", "0", to_epoch_millis(clock.now()))])

        stream = make_stream(connect=connect)
        stream.reconnect_attempts = 3

        await stream._session()

        assert urls == ["wss://fstream.binance.com/ws/key-1"]
        assert stream.reconnect_attempts == 0
        assert position_store.records[stored.id].open is False

    @pytest.mark.asyncio
    async def test_reconnects_with_backoff_until_limit(self, make_stream, clock):
        def refuse(url):
            raise ConnectionRefusedError("stream unavailable")

        stream = make_stream(
            connect=refuse,
            reconnection=ReconnectionSettings(max_attempts=2, base_delay_seconds=1.0, backoff_multiplier=2.0),
        )

        await stream._run()

        assert clock.sleeps == [1.0, 2.0]
        assert stream.client.created == 3
        assert stream.reconnect_attempts == 3
