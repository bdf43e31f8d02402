"""Base class for all trading strategies."""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from neural_trader.core.models import ClosedTrade, MarketSnapshot, Signal, SignalAction

logger = structlog.get_logger(__name__)


class BaseStrategy(ABC):
    """Abstract base class for trading strategies."""

    def __init__(self, name: str, instruments: Optional[List[str]] = None, **kwargs):
        self.name = name
        self.instruments = instruments or []
        self.params = kwargs
        self.is_active = True
        self.logger = logger.bind(strategy=name)

        # Track strategy performance
        self.signals_generated = 0
        self.trades_closed = 0
        self.total_pnl = Decimal("0")

    @abstractmethod
    async def analyze(self, snapshot: MarketSnapshot) -> Optional[Signal]:
        """
        Analyze one market snapshot and optionally emit a signal.

        Args:
            snapshot: Latest snapshot of a single instrument

        Returns:
            Signal, or None when the strategy has no opinion
        """
        pass

    def handles(self, instrument: str) -> bool:
        """True if the strategy trades ``instrument`` (all when unrestricted)."""
        return not self.instruments or instrument in self.instruments

    async def on_position_closed(self, trade: ClosedTrade):
        """Callback when a position opened from this strategy is closed."""
        self.trades_closed += 1
        self.total_pnl += trade.realized_pnl

    def get_stats(self) -> Dict[str, Any]:
        """Get strategy statistics."""
        return {
            'name': self.name,
            'instruments': self.instruments,
            'is_active': self.is_active,
            'signals_generated': self.signals_generated,
            'trades_closed': self.trades_closed,
            'total_pnl': str(self.total_pnl)
        }

    def pause(self):
        """Pause the strategy."""
        self.is_active = False
        self.logger.info("strategy.paused")

    def resume(self):
        """Resume the strategy."""
        self.is_active = True
        self.logger.info("strategy.resumed")

    def _create_signal(
        self,
        snapshot: MarketSnapshot,
        action: SignalAction,
        target_price: Decimal,
        stop_loss: Decimal,
        take_profit: Decimal,
        confidence: float,
        timeframe: str = "1h",
        metadata: Optional[Dict[str, Any]] = None
    ) -> Signal:
        """Helper to create a signal carrying the standard snapshot context."""
        signal = Signal(
            instrument=snapshot.instrument,
            action=action,
            price=snapshot.price,
            target_price=target_price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            confidence=confidence,
            timeframe=timeframe,
            strategy=self.name,
            metadata={**snapshot_context(snapshot, target_price), **(metadata or {})},
        )
        self.signals_generated += 1
        return signal


def snapshot_context(snapshot: MarketSnapshot, target_price: Decimal) -> Dict[str, Any]:
    """Standard signal metadata: price_change, volume, volatility, rsi, macd."""
    ind = snapshot.indicators
    return {
        'price_change': float((target_price - snapshot.price) / snapshot.price),
        'volume': float(snapshot.volume),
        'volatility': snapshot.volatility,
        'rsi': ind.rsi if ind else None,
        'macd': ind.macd.histogram if ind else None,
    }
