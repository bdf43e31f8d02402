"""Strategy driven by a forecasting model."""
from typing import List, Optional

from neural_trader.core.exceptions import PredictorError
from neural_trader.core.models import MarketSnapshot, Signal
from neural_trader.ml.predictor import IndicatorPredictor, Predictor
from neural_trader.strategies.base import BaseStrategy
from neural_trader.strategies.signal_generator import SignalGenerator


class PredictorStrategy(BaseStrategy):
    """Asks the predictor for a forecast and converts it with a SignalGenerator."""

    def __init__(
        self,
        instruments: Optional[List[str]] = None,
        predictor: Optional[Predictor] = None,
        generator: Optional[SignalGenerator] = None,
        **kwargs
    ):
        super().__init__("neural", instruments, **kwargs)
        self.predictor = predictor or IndicatorPredictor()
        self.generator = generator or SignalGenerator(strategy_name=self.name)

    async def analyze(self, snapshot: MarketSnapshot) -> Optional[Signal]:
        try:
            forecast = await self.predictor.predict(snapshot)
        except PredictorError as e:
            self.logger.debug(
                "strategy.no_forecast", instrument=snapshot.instrument, reason=str(e)
            )
            return None

        signal = self.generator.generate(snapshot, forecast)
        if signal is not None:
            self.signals_generated += 1
        return signal
