"""
Trading strategies for Neural Trader.

- SignalGenerator: converts predictor forecasts into signals
- PredictorStrategy: forecast-driven strategy ("neural")
- MomentumStrategy: RSI extremes confirmed by MACD
- MeanReversionStrategy: Bollinger band fades
- FundamentalStrategy: equity fundamentals blended with technicals
- StrategyManager: registry with per-strategy failure isolation
"""

from neural_trader.strategies.base import BaseStrategy
from neural_trader.strategies.fundamental import (
    FundamentalsProvider,
    FundamentalStrategy,
    Fundamentals,
    StaticFundamentalsProvider,
)
from neural_trader.strategies.manager import (
    STRATEGY_FACTORIES,
    StrategyManager,
    build_strategy_manager,
    create_strategy,
)
from neural_trader.strategies.mean_reversion import MeanReversionStrategy
from neural_trader.strategies.momentum import MomentumStrategy
from neural_trader.strategies.predictor_strategy import PredictorStrategy
from neural_trader.strategies.signal_generator import SignalGenerator

__all__ = [
    "BaseStrategy",
    "SignalGenerator",
    "PredictorStrategy",
    "MomentumStrategy",
    "MeanReversionStrategy",
    "FundamentalStrategy",
    "Fundamentals",
    "FundamentalsProvider",
    "StaticFundamentalsProvider",
    "StrategyManager",
    "STRATEGY_FACTORIES",
    "create_strategy",
    "build_strategy_manager",
]
