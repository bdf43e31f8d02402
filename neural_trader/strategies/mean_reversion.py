"""Bollinger band mean reversion strategy."""
from decimal import Decimal
from typing import List, Optional

from neural_trader.core.models import MarketSnapshot, Signal, SignalAction
from neural_trader.strategies.base import BaseStrategy


class MeanReversionStrategy(BaseStrategy):
    """Fades moves outside the Bollinger bands back to the middle band."""

    CONFIDENCE = 0.65

    def __init__(self, instruments: Optional[List[str]] = None, **kwargs):
        super().__init__("mean_reversion", instruments, **kwargs)

    async def analyze(self, snapshot: MarketSnapshot) -> Optional[Signal]:
        if snapshot.indicators is None or snapshot.indicators.bollinger is None:
            return None

        bands = snapshot.indicators.bollinger
        price = snapshot.price
        middle = Decimal(str(bands.middle))

        if price < Decimal(str(bands.lower)):
            return self._create_signal(
                snapshot,
                SignalAction.BUY,
                target_price=middle,
                stop_loss=price * Decimal("0.97"),
                take_profit=middle,
                confidence=self.CONFIDENCE,
            )

        if price > Decimal(str(bands.upper)):
            return self._create_signal(
                snapshot,
                SignalAction.SELL,
                target_price=middle,
                stop_loss=price * Decimal("1.03"),
                take_profit=middle,
                confidence=self.CONFIDENCE,
            )

        return None
