"""Unit tests for the market data cache and ticker stream."""
import asyncio
import json
import pytest
from decimal import Decimal
from unittest.mock import patch

from neural_trader.core.events import EventType
from neural_trader.core.exceptions import VenueUnavailable
from neural_trader.core.models import QuoteInfo
from neural_trader.data.market_data import MarketDataCache
from neural_trader.data.stream import TickerStream


@pytest.fixture
def cache(mock_venue, event_bus):
    return MarketDataCache(mock_venue, event_bus, history_window=50)


# =============================================================================
# Refresh Tests
# =============================================================================

class TestRefresh:
    """Test pulling snapshots from the venue."""

    @pytest.mark.asyncio
    async def test_first_refresh_loads_history(self, cache, mock_venue, event_bus, wave_candles):
        mock_venue.fetch_snapshot.return_value = QuoteInfo(
            instrument="BTC/USDT", price=Decimal("105"), volume=Decimal("7")
        )
        mock_venue.fetch_candles.return_value = wave_candles(40)
        updates = []
        event_bus.subscribe(EventType.MARKET_UPDATE, updates.append)

        snapshot = await cache.refresh("BTC/USDT")

        assert snapshot.price == Decimal("105")
        assert snapshot.volume == Decimal("7")
        assert len(snapshot.candles) == 40
        assert snapshot.indicators is not None
        assert snapshot.volatility > 0
        assert updates[0]["instrument"] == "BTC/USDT"
        mock_venue.fetch_candles.assert_awaited_once_with("BTC/USDT", "1h", 50)

    @pytest.mark.asyncio
    async def test_history_fetched_once(self, cache, mock_venue):
        mock_venue.fetch_snapshot.return_value = QuoteInfo(
            instrument="BTC/USDT", price=Decimal("100")
        )
        await cache.refresh("BTC/USDT")
        await cache.refresh("BTC/USDT")
        assert mock_venue.fetch_candles.await_count == 1

    @pytest.mark.asyncio
    async def test_venue_outage_falls_back_to_cache(self, cache, mock_venue):
        mock_venue.fetch_snapshot.return_value = QuoteInfo(
            instrument="BTC/USDT", price=Decimal("100")
        )
        first = await cache.refresh("BTC/USDT")

        mock_venue.fetch_snapshot.side_effect = VenueUnavailable("timeout")
        second = await cache.refresh("BTC/USDT")

        assert second is first
        assert second.price == Decimal("100")

    @pytest.mark.asyncio
    async def test_venue_outage_without_cache_raises(self, cache, mock_venue):
        mock_venue.fetch_snapshot.side_effect = VenueUnavailable("timeout")
        with pytest.raises(VenueUnavailable):
            await cache.refresh("ETH/USDT")


# =============================================================================
# Candle Window Tests
# =============================================================================

class TestCandleWindow:
    """Test bounded history and indicator recomputation."""

    def test_append_bounded_by_window(self, cache, wave_candles):
        for candle in wave_candles(80):
            snapshot = cache.append_candle("BTC/USDT", candle)

        assert len(snapshot.candles) == 50
        assert snapshot.price == snapshot.candles[-1].close
        assert cache.price_map() == {"BTC/USDT": snapshot.price}

    def test_indicators_after_enough_history(self, cache, wave_candles):
        candles = wave_candles(30)
        for candle in candles[:20]:
            snapshot = cache.append_candle("BTC/USDT", candle)
        assert snapshot.indicators is None

        for candle in candles[20:]:
            snapshot = cache.append_candle("BTC/USDT", candle)
        assert snapshot.indicators is not None

    def test_load_history_recomputes_existing_snapshot(self, cache, wave_candles):
        cache.append_candle("BTC/USDT", wave_candles(1)[0])
        cache.load_history("BTC/USDT", wave_candles(40))
        assert len(cache.get_snapshot("BTC/USDT").candles) == 40

    @pytest.mark.asyncio
    async def test_apply_ticker_emits_event(self, cache, event_bus):
        ticks = []
        event_bus.subscribe(EventType.TICKER, ticks.append)

        snapshot = await cache.apply_ticker("ETH/USDT", Decimal("51"), Decimal("3"))

        assert snapshot.price == Decimal("51")
        assert ticks == [{"instrument": "ETH/USDT", "price": Decimal("51"), "volume": Decimal("3")}]


# =============================================================================
# Ticker Stream Tests
# =============================================================================

class TestTickerStream:
    """Test message parsing into the cache."""

    @pytest.fixture
    def stream(self, cache):
        return TickerStream("wss://example.invalid/ws", cache, instruments=["BTC/USDT"])

    @pytest.mark.asyncio
    async def test_valid_message_updates_cache(self, stream, cache):
        raw = json.dumps({"symbol": "BTC/USDT", "price": "50000.5", "volume": "1.2"})

        assert await stream.handle_message(raw) is True

        snapshot = cache.get_snapshot("BTC/USDT")
        assert snapshot.price == Decimal("50000.5")
        assert stream.messages_processed == 1

    @pytest.mark.asyncio
    async def test_instrument_alias(self, stream, cache):
        raw = json.dumps({"instrument": "BTC/USDT", "price": 42})
        assert await stream.handle_message(raw) is True
        assert cache.get_snapshot("BTC/USDT").price == Decimal("42")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        "not json",
        json.dumps({"symbol": "BTC/USDT"}),
        json.dumps({"symbol": "BTC/USDT", "price": "abc"}),
        json.dumps({"symbol": "BTC/USDT", "price": "-1"}),
        json.dumps({"symbol": "DOGE/USDT", "price": "1"}),
    ])
    async def test_ignored_messages(self, stream, cache, raw):
        assert await stream.handle_message(raw) is False
        assert cache.get_snapshot("BTC/USDT") is None

    @pytest.mark.asyncio
    async def test_stop_before_start(self, stream):
        await stream.stop()
        assert stream.is_running is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        "[1, 2]",
        json.dumps("BTC/USDT"),
        json.dumps({"symbol": ["BTC/USDT"], "price": "1"}),
        json.dumps({"symbol": "BTC/USDT", "price": "NaN"}),
        json.dumps({"symbol": "BTC/USDT", "price": "Infinity"}),
    ])
    async def test_malformed_frames_ignored(self, stream, cache, raw):
        assert await stream.handle_message(raw) is False
        assert cache.get_snapshot("BTC/USDT") is None

    @pytest.mark.asyncio
    async def test_reconnects_until_stopped(self, cache):
        stream = TickerStream("wss://example.invalid/ws", cache, reconnect_delay=0.001)

        with patch("neural_trader.data.stream.websockets.connect",
                   side_effect=OSError("connection refused")) as connect:
            stream.start()
            for _ in range(200):
                if stream.reconnect_count >= 3:
                    break
                await asyncio.sleep(0.005)
            await stream.stop()

        assert stream.reconnect_count >= 3
        assert connect.call_count >= 3
        assert stream.is_running is False

        attempts = connect.call_count
        await asyncio.sleep(0.02)
        assert connect.call_count == attempts
