"""Market data cache: one live snapshot per instrument."""
from collections import deque
from decimal import Decimal
from typing import Deque, Dict, List, Optional

import structlog

from neural_trader.core.events import EventBus, EventType
from neural_trader.core.exceptions import VenueUnavailable
from neural_trader.core.models import Candle, MarketSnapshot, utc_now
from neural_trader.data import indicators
from neural_trader.exchange.base import MarketVenue

logger = structlog.get_logger(__name__)


class MarketDataCache:
    """
    Holds the latest snapshot and a bounded candle window per instrument.

    The prediction cycle refreshes snapshots through the venue; the ticker
    stream writes prices directly with ``apply_ticker``. Volatility and the
    indicator bundle are recomputed whenever the candle window changes.
    """

    def __init__(
        self,
        venue: MarketVenue,
        event_bus: Optional[EventBus] = None,
        history_window: int = 500,
        timeframe: str = "1h",
        volatility_window: int = 20,
    ):
        self.venue = venue
        self.event_bus = event_bus
        self.history_window = history_window
        self.timeframe = timeframe
        self.volatility_window = volatility_window

        self._snapshots: Dict[str, MarketSnapshot] = {}
        self._candles: Dict[str, Deque[Candle]] = {}

    @property
    def instruments(self) -> List[str]:
        return list(self._snapshots.keys())

    def get_snapshot(self, instrument: str) -> Optional[MarketSnapshot]:
        """Cached snapshot without touching the venue."""
        return self._snapshots.get(instrument)

    def price_map(self) -> Dict[str, Decimal]:
        """Latest price per instrument."""
        return {name: snap.price for name, snap in self._snapshots.items()}

    async def refresh(self, instrument: str) -> MarketSnapshot:
        """
        Pull a fresh quote (and candle history on first use) from the venue.

        Falls back to the cached snapshot on ``VenueUnavailable``; re-raises
        when there is nothing cached yet.
        """
        try:
            quote = await self.venue.fetch_snapshot(instrument)
            if instrument not in self._candles:
                candles = await self.venue.fetch_candles(
                    instrument, self.timeframe, self.history_window
                )
                self.load_history(instrument, candles)
        except VenueUnavailable as e:
            cached = self._snapshots.get(instrument)
            if cached is None:
                raise
            logger.warning(
                "market_data.using_cached",
                instrument=instrument,
                cached_at=cached.timestamp.isoformat(),
                error=str(e),
            )
            return cached

        snapshot = self._upsert(instrument, quote.price, quote.volume)
        self._recompute(snapshot)

        if self.event_bus:
            await self.event_bus.publish(
                EventType.MARKET_UPDATE,
                {"instrument": instrument, "price": snapshot.price, "snapshot": snapshot},
            )
        return snapshot

    def load_history(self, instrument: str, candles: List[Candle]) -> None:
        """Replace the candle window for an instrument."""
        window: Deque[Candle] = deque(maxlen=self.history_window)
        window.extend(candles)
        self._candles[instrument] = window

        snapshot = self._snapshots.get(instrument)
        if snapshot is not None:
            self._recompute(snapshot)

    def append_candle(self, instrument: str, candle: Candle) -> MarketSnapshot:
        """Append a closed bar, evicting the oldest beyond the window."""
        window = self._candles.setdefault(instrument, deque(maxlen=self.history_window))
        window.append(candle)
        snapshot = self._upsert(instrument, candle.close, candle.volume)
        self._recompute(snapshot)
        return snapshot

    async def apply_ticker(
        self, instrument: str, price: Decimal, volume: Optional[Decimal] = None
    ) -> MarketSnapshot:
        """Streaming price update; emits a TICKER event."""
        snapshot = self._upsert(instrument, price, volume)

        if self.event_bus:
            await self.event_bus.publish(
                EventType.TICKER,
                {"instrument": instrument, "price": price, "volume": snapshot.volume},
            )
        return snapshot

    def _upsert(
        self, instrument: str, price: Decimal, volume: Optional[Decimal]
    ) -> MarketSnapshot:
        snapshot = self._snapshots.get(instrument)
        if snapshot is None:
            snapshot = MarketSnapshot(
                instrument=instrument,
                price=price,
                volume=volume if volume is not None else Decimal("0"),
            )
            self._snapshots[instrument] = snapshot
        else:
            snapshot.price = price
            if volume is not None:
                snapshot.volume = volume
            snapshot.timestamp = utc_now()
        return snapshot

    def _recompute(self, snapshot: MarketSnapshot) -> None:
        window = self._candles.get(snapshot.instrument)
        if not window:
            return

        snapshot.candles = list(window)
        closes = snapshot.closes
        snapshot.volatility = indicators.volatility(closes, self.volatility_window)
        snapshot.indicators = indicators.compute_indicators(closes)
