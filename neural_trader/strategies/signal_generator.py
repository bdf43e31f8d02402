"""Forecast-to-signal conversion."""
from decimal import Decimal
from typing import Optional

from neural_trader.core.models import (
    Forecast, ForecastDirection, MarketSnapshot, Signal, SignalAction
)
from neural_trader.strategies.base import snapshot_context


class SignalGenerator:
    """
    Turns a predictor forecast into a trade signal.

    A signal is produced only when the forecast is confident enough and the
    predicted move is large enough. Protective levels are fixed percentages
    around the current price. ``generate`` has no side effects.
    """

    def __init__(
        self,
        threshold: float = 0.65,
        min_price_change: float = 0.01,
        stop_loss_pct: float = 0.02,
        take_profit_pct: float = 0.05,
        strategy_name: str = "neural",
    ):
        self.threshold = threshold
        self.min_price_change = Decimal(str(min_price_change))
        self.stop_loss_pct = Decimal(str(stop_loss_pct))
        self.take_profit_pct = Decimal(str(take_profit_pct))
        self.strategy_name = strategy_name

    def generate(
        self, snapshot: MarketSnapshot, forecast: Optional[Forecast]
    ) -> Optional[Signal]:
        if forecast is None:
            return None
        if forecast.confidence < self.threshold:
            return None

        price = snapshot.price
        change = abs(forecast.predicted_price - price) / price
        if change < self.min_price_change:
            return None

        if forecast.direction == ForecastDirection.UP:
            action = SignalAction.BUY
            stop_loss = price * (1 - self.stop_loss_pct)
            take_profit = price * (1 + self.take_profit_pct)
        elif forecast.direction == ForecastDirection.DOWN:
            action = SignalAction.SELL
            stop_loss = price * (1 + self.stop_loss_pct)
            take_profit = price * (1 - self.take_profit_pct)
        else:
            return None

        return Signal(
            instrument=snapshot.instrument,
            action=action,
            price=price,
            target_price=forecast.predicted_price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            confidence=forecast.confidence,
            timeframe=forecast.timeframe,
            strategy=self.strategy_name,
            metadata=snapshot_context(snapshot, forecast.predicted_price),
        )
