"""Price direction predictors.

The orchestrator only depends on the ``Predictor`` interface; the bundled
``IndicatorPredictor`` is a deterministic heuristic that scores technical
indicators and turns the score into class probabilities.
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict

import numpy as np
import structlog

from neural_trader.core.exceptions import PredictorError
from neural_trader.core.models import Forecast, ForecastDirection, MarketSnapshot

logger = structlog.get_logger(__name__)

CLASSES = ("buy", "hold", "sell")

DIRECTION_BY_CLASS = {
    "buy": ForecastDirection.UP,
    "hold": ForecastDirection.NEUTRAL,
    "sell": ForecastDirection.DOWN,
}


class Predictor(ABC):
    """Produces a directional forecast for one market snapshot."""

    name: str = "predictor"

    @abstractmethod
    async def predict(self, snapshot: MarketSnapshot) -> Forecast:
        """
        Forecast the next move of ``snapshot.instrument``.

        Raises:
            PredictorError: If no forecast can be produced
        """


class IndicatorPredictor(Predictor):
    """
    Heuristic predictor over the snapshot's indicator bundle.

    Each feature contributes a score in [-1, 1] (positive is bullish):
    - RSI distance from 50, inverted (oversold is bullish)
    - MACD histogram sign scaled by its size relative to price
    - Position of the price inside the Bollinger band, inverted
    - EMA12 vs EMA26 momentum

    The weighted score feeds a 3-way softmax (buy, hold, sell) where the
    hold logit is fixed, so a weak score lands on hold.
    """

    name = "indicator"

    WEIGHTS = {"rsi": 1.0, "macd": 1.0, "bollinger": 0.8, "momentum": 0.7}
    PRICE_IMPACT = 0.05

    def __init__(self, temperature: float = 1.0, hold_bias: float = 0.5, timeframe: str = "1h"):
        if temperature <= 0:
            raise ValueError("temperature must be positive")
        self.temperature = temperature
        self.hold_bias = hold_bias
        self.timeframe = timeframe

    def features(self, snapshot: MarketSnapshot) -> Dict[str, float]:
        ind = snapshot.indicators
        if ind is None:
            raise PredictorError(f"No indicators for {snapshot.instrument}")

        price = float(snapshot.price)
        features = {"rsi": (50.0 - ind.rsi) / 50.0}

        hist = ind.macd.histogram
        features["macd"] = float(np.tanh(hist / (price * 0.001))) if price > 0 else 0.0

        if ind.bollinger is not None and ind.bollinger.upper > ind.bollinger.lower:
            half_width = (ind.bollinger.upper - ind.bollinger.lower) / 2
            position = (price - ind.bollinger.middle) / half_width
            features["bollinger"] = float(np.clip(-position, -1.0, 1.0))
        else:
            features["bollinger"] = 0.0

        if ind.ema is not None and ind.ema.ema26 > 0:
            spread = (ind.ema.ema12 - ind.ema.ema26) / ind.ema.ema26
            features["momentum"] = float(np.tanh(spread * 100))
        else:
            features["momentum"] = 0.0

        return features

    def probabilities(self, score: float) -> Dict[str, float]:
        logits = np.array([score, self.hold_bias, -score]) / self.temperature
        exp = np.exp(logits - logits.max())
        probs = exp / exp.sum()
        return {cls: float(p) for cls, p in zip(CLASSES, probs)}

    async def predict(self, snapshot: MarketSnapshot) -> Forecast:
        features = self.features(snapshot)
        score = sum(self.WEIGHTS[name] * value for name, value in features.items())
        probs = self.probabilities(score)

        winner = max(CLASSES, key=lambda cls: probs[cls])
        shift = (probs["buy"] - probs["sell"]) * self.PRICE_IMPACT
        predicted = snapshot.price * (Decimal("1") + Decimal(str(round(shift, 8))))

        logger.debug(
            "predictor.forecast",
            instrument=snapshot.instrument,
            score=round(score, 4),
            direction=DIRECTION_BY_CLASS[winner].value,
            confidence=round(probs[winner], 4),
        )

        return Forecast(
            confidence=probs[winner],
            direction=DIRECTION_BY_CLASS[winner],
            predicted_price=predicted,
            timeframe=self.timeframe,
            probabilities=probs,
        )
