"""Market venue interface consumed by the orchestrator core."""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional

from neural_trader.core.models import (
    AccountInfo, Candle, OrderResult, OrderType, QuoteInfo, SignalAction
)


class MarketVenue(ABC):
    """
    Abstract broker/exchange.

    Implementations raise ``VenueUnavailable`` on connectivity loss and
    ``OrderRejected`` when the venue refuses an order. They never return
    untyped payloads.
    """

    name: str = "venue"

    @abstractmethod
    async def fetch_snapshot(self, instrument: str) -> QuoteInfo:
        """Current price, volume and top of book."""

    @abstractmethod
    async def fetch_candles(
        self, instrument: str, timeframe: str = "1h", count: int = 100
    ) -> List[Candle]:
        """OHLCV history, oldest first."""

    @abstractmethod
    async def place_order(
        self,
        instrument: str,
        order_type: OrderType,
        side: SignalAction,
        quantity: Decimal,
        price: Optional[Decimal] = None,
    ) -> OrderResult:
        """Submit an order."""

    @abstractmethod
    async def cancel_order(self, order_id: str, instrument: Optional[str] = None) -> bool:
        """Cancel an order; False if the venue no longer knows it."""

    @abstractmethod
    async def get_account(self) -> AccountInfo:
        """Cash, buying power, equity and holdings."""

    async def initialize(self) -> None:
        """Connect and load venue metadata."""

    async def close(self) -> None:
        """Release connections."""
