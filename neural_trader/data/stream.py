"""WebSocket ticker ingestion into the market data cache."""
import asyncio
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import structlog
import websockets

from neural_trader.data.market_data import MarketDataCache

logger = structlog.get_logger(__name__)


class TickerStream:
    """
    Streams ticker messages from a WebSocket feed into ``MarketDataCache``.

    Runs as its own task, independent of the scheduler cycles. A dropped
    connection is retried forever with a fixed delay until ``stop()``.

    Accepted message shape (JSON):
        {"symbol": "BTC/USDT", "price": "50000.5", "volume": "12.3"}
    ``instrument`` is accepted as an alias of ``symbol``.
    """

    def __init__(
        self,
        url: str,
        cache: MarketDataCache,
        instruments: Optional[List[str]] = None,
        reconnect_delay: float = 5.0,
    ):
        self.url = url
        self.cache = cache
        self.instruments = instruments or []
        self.reconnect_delay = reconnect_delay

        self.reconnect_count = 0
        self.messages_processed = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("ticker_stream.started", url=self.url)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ticker_stream.stopped", reconnects=self.reconnect_count)

    async def _run(self) -> None:
        """Reconnect loop with fixed backoff."""
        while self._running:
            try:
                await self._consume()
            except asyncio.CancelledError:
                raise
            except (websockets.ConnectionClosed, OSError) as e:
                logger.warning(
                    "ticker_stream.disconnected",
                    error=str(e),
                    retry_in=self.reconnect_delay,
                )
            except Exception as e:
                logger.error(
                    "ticker_stream.error",
                    error=str(e),
                    retry_in=self.reconnect_delay,
                    exc_info=True,
                )
            if not self._running:
                break
            self.reconnect_count += 1
            await asyncio.sleep(self.reconnect_delay)

    async def _consume(self) -> None:
        async with websockets.connect(self.url, ping_interval=25, ping_timeout=20) as ws:
            if self.instruments:
                await ws.send(json.dumps({"type": "subscribe", "symbols": self.instruments}))
            logger.info("ticker_stream.connected", url=self.url)

            async for raw in ws:
                await self.handle_message(raw)

    async def handle_message(self, raw: Any) -> bool:
        """Parse one message and write it into the cache; False if ignored."""
        try:
            data: Dict[str, Any] = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.debug("ticker_stream.bad_message")
            return False
        if not isinstance(data, dict):
            logger.debug("ticker_stream.bad_message", payload_type=type(data).__name__)
            return False

        instrument = data.get("symbol") or data.get("instrument")
        if not isinstance(instrument, str) or not instrument or data.get("price") is None:
            return False
        if self.instruments and instrument not in self.instruments:
            return False

        try:
            price = Decimal(str(data["price"]))
            volume = Decimal(str(data["volume"])) if data.get("volume") is not None else None
        except (InvalidOperation, ValueError):
            logger.debug("ticker_stream.bad_price", instrument=instrument)
            return False
        if not price.is_finite() or price <= 0:
            logger.debug("ticker_stream.bad_price", instrument=instrument, price=str(price))
            return False
        if volume is not None and not volume.is_finite():
            volume = None

        await self.cache.apply_ticker(instrument, price, volume)
        self.messages_processed += 1
        return True
