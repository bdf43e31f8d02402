"""RSI/MACD momentum strategy."""
from decimal import Decimal
from typing import List, Optional

from neural_trader.core.models import MarketSnapshot, Signal, SignalAction
from neural_trader.strategies.base import BaseStrategy


class MomentumStrategy(BaseStrategy):
    """
    Trades RSI extremes confirmed by the MACD histogram.

    BUY: RSI below ``oversold`` with a positive histogram (momentum turning up)
    SELL: RSI above ``overbought`` with a negative histogram
    """

    CONFIDENCE = 0.7

    def __init__(
        self,
        instruments: Optional[List[str]] = None,
        oversold: float = 30.0,
        overbought: float = 70.0,
        **kwargs
    ):
        super().__init__("momentum", instruments, **kwargs)
        self.oversold = oversold
        self.overbought = overbought

    async def analyze(self, snapshot: MarketSnapshot) -> Optional[Signal]:
        ind = snapshot.indicators
        if ind is None:
            return None

        price = snapshot.price
        histogram = ind.macd.histogram

        if ind.rsi < self.oversold and histogram > 0:
            return self._create_signal(
                snapshot,
                SignalAction.BUY,
                target_price=price * Decimal("1.03"),
                stop_loss=price * Decimal("0.98"),
                take_profit=price * Decimal("1.05"),
                confidence=self.CONFIDENCE,
            )

        if ind.rsi > self.overbought and histogram < 0:
            return self._create_signal(
                snapshot,
                SignalAction.SELL,
                target_price=price * Decimal("0.97"),
                stop_loss=price * Decimal("1.02"),
                take_profit=price * Decimal("0.95"),
                confidence=self.CONFIDENCE,
            )

        return None
