from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.trading.models import BrokerName, MarketType, OrderAck, Side, TradeRecord
from core.utils.exceptions import OrderError, UnsupportedOperationError
from services.lifecycle.venues import BinanceFuturesVenue, BinanceSpotVenue, CapitalVenue


def ack(broker=BrokerName.BINANCE, order_id="1"):
    return OrderAck(broker=broker, instrument="BTCUSDT", order_id=order_id, reference_id=order_id)


class TestBinanceSpotVenue:
    @pytest.mark.asyncio
    async def test_close_sells_base_quantity(self, make_position):
        client = MagicMock()
        client.place_market_order = AsyncMock(return_value=ack())
        venue = BinanceSpotVenue(client)

        await venue.submit_close(make_position(market=MarketType.SPOT, size=0.25))

        client.place_market_order.assert_awaited_once_with("BTCUSDT", Side.SELL, 0.25)
        assert await venue.open_position_keys() is None

    @pytest.mark.asyncio
    async def test_short_open_rejected_before_broker_call(self, make_intent):
        client = MagicMock()
        client.place_market_order = AsyncMock()
        venue = BinanceSpotVenue(client)

        with pytest.raises(UnsupportedOperationError):
            await venue.submit_open(make_intent(market=MarketType.SPOT, side=Side.SELL))
        client.place_market_order.assert_not_awaited()
        assert venue.name == "binance:SPOT"

    def test_fee_factor_must_be_positive(self):
        with pytest.raises(ValueError):
            BinanceSpotVenue(MagicMock(), fee_factor=0)


class TestBinanceFuturesVenue:
    @pytest.mark.asyncio
    async def test_prepare_sets_leverage(self, make_intent):
        client = MagicMock()
        client.set_leverage = AsyncMock(return_value={})
        venue = BinanceFuturesVenue(client, default_leverage=3)

        applied = [await venue.prepare(make_intent()), await venue.prepare(make_intent(leverage=10))]

        assert applied == [3.0, 10.0]
        assert [c.args for c in client.set_leverage.await_args_list] == [("BTCUSDT", 3), ("BTCUSDT", 10)]

    @pytest.mark.asyncio
    async def test_close_is_reduce_only_opposite_side(self, make_position):
        client = MagicMock()
        client.place_market_order = AsyncMock(return_value=ack())
        venue = BinanceFuturesVenue(client)

        await venue.submit_close(make_position(side=Side.SELL))

        client.place_market_order.assert_awaited_once_with("BTCUSDT", Side.BUY, 0.01, reduce_only=True)

    @pytest.mark.asyncio
    async def test_open_keys_are_non_flat_symbols(self):
        client = MagicMock()
        client.get_position_risk = AsyncMock(return_value=[
            {"symbol": "BTCUSDT", "positionAmt": "0.010"},
            {"symbol": "ETHUSDT", "positionAmt": "0.000"},
            {"symbol": "SOLUSDT", "positionAmt": "-2"},
        ])

        assert await BinanceFuturesVenue(client).open_position_keys() == {"BTCUSDT", "SOLUSDT"}

    @pytest.mark.asyncio
    async def test_backfill_uses_reducing_fills(self, make_position, clock):
        client = MagicMock()
        client.get_trades = AsyncMock(return_value=[
            TradeRecord(order_id="1", qty=0.01, quote_qty=500.0),
            TradeRecord(order_id="2", qty=0.01, quote_qty=515.0, realized_pnl=15.0),
        ])
        venue = BinanceFuturesVenue(client)
        position = make_position(size=0.01)

        proceeds = await venue.backfill_close(position, clock.now() - timedelta(minutes=2), clock.now())

        assert proceeds.notional == pytest.approx(515.0)
        assert proceeds.source == "userTrades"
        assert venue.position_key(position) == "BTCUSDT"

    @pytest.mark.asyncio
    async def test_backfill_without_closing_fills(self, make_position, clock):
        client = MagicMock()
        client.get_trades = AsyncMock(return_value=[TradeRecord(order_id="1", qty=0.01, quote_qty=500.0)])

        assert await BinanceFuturesVenue(client).backfill_close(make_position(), clock.now(), clock.now()) is None


class TestCapitalVenue:
    @pytest.mark.asyncio
    async def test_close_deletes_by_deal_id(self, make_position):
        client = MagicMock()
        client.delete_position = AsyncMock(return_value=ack(BrokerName.CAPITAL, "c_ref"))
        venue = CapitalVenue(client)

        await venue.submit_close(make_position(broker=BrokerName.CAPITAL, market=MarketType.CFD,
                                               broker_reference_id="deal-1"))

        client.delete_position.assert_awaited_once_with("BTCUSDT", "deal-1")
        assert venue.renames_on_close

    @pytest.mark.asyncio
    async def test_close_without_deal_id_is_rejected(self, make_position):
        with pytest.raises(OrderError):
            await CapitalVenue(MagicMock()).submit_close(make_position(broker_reference_id=None))

    @pytest.mark.asyncio
    async def test_open_keys_are_deal_ids(self):
        client = MagicMock()
        client.get_positions = AsyncMock(return_value=[
            {"position": {"dealId": "deal-1"}, "market": {"epic": "EURUSD"}},
            {"position": {}, "market": {"epic": "GBPUSD"}},
        ])

        assert await CapitalVenue(client).open_position_keys() == {"deal-1"}

    @pytest.mark.asyncio
    async def test_locate_reference_picks_newest_untracked_deal(self, make_intent):
        client = MagicMock()
        client.get_positions = AsyncMock(return_value=[
            {"position": {"dealId": "deal-1", "direction": "BUY", "createdDateUTC": "2024-01-01T12:00:00"},
             "market": {"epic": "EURUSD"}},
            {"position": {"dealId": "deal-2", "direction": "BUY", "createdDateUTC": "2024-01-01T12:05:00"},
             "market": {"epic": "EURUSD"}},
            {"position": {"dealId": "deal-3", "direction": "SELL", "createdDateUTC": "2024-01-01T12:09:00"},
             "market": {"epic": "EURUSD"}},
            {"position": {"dealId": "deal-4", "direction": "BUY", "createdDateUTC": "2024-01-01T12:10:00"},
             "market": {"epic": "GBPUSD"}},
        ])
        intent = make_intent(instrument="EURUSD", broker=BrokerName.CAPITAL, market=MarketType.CFD)
        deal_ack = OrderAck(broker=BrokerName.CAPITAL, instrument="EURUSD", order_id="o_ref", reference_id="o_ref")
        venue = CapitalVenue(client)

        assert await venue.locate_reference(intent, deal_ack, set()) == "deal-2"
        assert await venue.locate_reference(intent, deal_ack, {"deal-2"}) == "deal-1"
        assert await venue.locate_reference(intent, deal_ack, {"deal-1", "deal-2"}) is None

    @pytest.mark.asyncio
    async def test_locate_reference_never_returns_deal_reference(self, make_intent):
        client = MagicMock()
        client.get_positions = AsyncMock(side_effect=ConnectionError("positions endpoint down"))
        intent = make_intent(instrument="EURUSD", broker=BrokerName.CAPITAL, market=MarketType.CFD)
        deal_ack = OrderAck(broker=BrokerName.CAPITAL, instrument="EURUSD", order_id="o_ref", reference_id="o_ref")
        venue = CapitalVenue(client)

        assert await venue.locate_reference(intent, deal_ack, set()) is None
        assert await venue.locate_reference(intent, deal_ack, None) is None
        client.get_positions.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_backfill_takes_latest_close_activity(self, make_position, clock):
        client = MagicMock()
        client.get_activity_history = AsyncMock(return_value=[
            {"dealId": "deal-1", "status": "ACCEPTED", "dateUTC": "2024-01-01T12:01:00",
             "details": {"level": 1.10, "actions": [{"actionType": "POSITION_PARTIALLY_CLOSED"}]}},
            {"dealId": "deal-1", "status": "ACCEPTED", "dateUTC": "2024-01-01T12:05:00", "source": "SL",
             "details": {"level": 1.20, "actions": [{"actionType": "POSITION_CLOSED"}]}},
            {"dealId": "deal-1", "status": "ACCEPTED", "dateUTC": "2024-01-01T12:09:00",
             "details": {"level": 1.50, "actions": [{"actionType": "POSITION_OPENED"}]}},
            {"dealId": "deal-2", "status": "ACCEPTED", "dateUTC": "2024-01-01T12:10:00",
             "details": {"level": 9.99, "actions": [{"actionType": "POSITION_CLOSED"}]}},
        ])
        position = make_position(broker=BrokerName.CAPITAL, market=MarketType.CFD,
                                 broker_reference_id="deal-1", size=100)

        proceeds = await CapitalVenue(client).backfill_close(position, clock.now(), clock.now())

        assert proceeds.notional == pytest.approx(120.0)
        assert proceeds.reference_id == "deal-1"
        assert proceeds.source == "activity"
