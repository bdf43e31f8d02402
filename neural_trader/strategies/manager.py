"""Strategy registry and factory."""
import asyncio
from typing import Callable, Dict, List, Optional

import structlog

from neural_trader.core.models import MarketSnapshot, Signal
from neural_trader.strategies.base import BaseStrategy
from neural_trader.strategies.fundamental import FundamentalStrategy
from neural_trader.strategies.mean_reversion import MeanReversionStrategy
from neural_trader.strategies.momentum import MomentumStrategy
from neural_trader.strategies.predictor_strategy import PredictorStrategy

logger = structlog.get_logger(__name__)

STRATEGY_FACTORIES: Dict[str, Callable[..., BaseStrategy]] = {
    "momentum": MomentumStrategy,
    "mean_reversion": MeanReversionStrategy,
    "neural": PredictorStrategy,
    "fundamental": FundamentalStrategy,
}


def create_strategy(name: str, **kwargs) -> BaseStrategy:
    """
    Build a strategy variant by name.

    Raises:
        KeyError: If no variant is registered under ``name``
    """
    try:
        factory = STRATEGY_FACTORIES[name]
    except KeyError:
        raise KeyError(
            f"Unknown strategy '{name}'. Available: {', '.join(sorted(STRATEGY_FACTORIES))}"
        ) from None
    return factory(**kwargs)


class StrategyManager:
    """
    Registry of active strategies keyed by name.

    ``analyze_all`` runs every active strategy against a snapshot; a failing
    strategy is logged and skipped so it cannot block the others.
    """

    def __init__(self, strategies: Optional[List[BaseStrategy]] = None):
        self._strategies: Dict[str, BaseStrategy] = {}
        for strategy in strategies or []:
            self.register(strategy)

    def register(self, strategy: BaseStrategy) -> None:
        if strategy.name in self._strategies:
            logger.warning("strategy_manager.replacing", strategy=strategy.name)
        self._strategies[strategy.name] = strategy
        logger.info("strategy_manager.registered", strategy=strategy.name)

    def unregister(self, name: str) -> bool:
        return self._strategies.pop(name, None) is not None

    def get(self, name: str) -> Optional[BaseStrategy]:
        return self._strategies.get(name)

    def names(self) -> List[str]:
        return list(self._strategies.keys())

    def __len__(self) -> int:
        return len(self._strategies)

    async def analyze_with(self, name: str, snapshot: MarketSnapshot) -> Optional[Signal]:
        """Run a single named strategy; raises KeyError if unknown."""
        strategy = self._strategies.get(name)
        if strategy is None:
            raise KeyError(f"Strategy '{name}' is not registered")
        return await strategy.analyze(snapshot)

    async def analyze_all(self, snapshot: MarketSnapshot) -> List[Signal]:
        signals = []
        for strategy in list(self._strategies.values()):
            if not strategy.is_active or not strategy.handles(snapshot.instrument):
                continue
            try:
                signal = await strategy.analyze(snapshot)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "strategy_manager.strategy_failed",
                    strategy=strategy.name,
                    instrument=snapshot.instrument,
                    error=str(e),
                    exc_info=True,
                )
                continue
            if signal is not None:
                signals.append(signal)
        return signals

    def get_stats(self) -> Dict[str, Dict]:
        return {name: s.get_stats() for name, s in self._strategies.items()}


def build_strategy_manager(names: List[str], **kwargs) -> StrategyManager:
    """StrategyManager populated from a list of variant names."""
    return StrategyManager([create_strategy(name, **kwargs) for name in names])
