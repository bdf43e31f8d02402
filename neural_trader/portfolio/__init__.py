"""Portfolio state and performance tracking."""

from neural_trader.portfolio.ledger import PortfolioLedger
from neural_trader.portfolio.performance import PerformanceAggregator

__all__ = ["PortfolioLedger", "PerformanceAggregator"]
