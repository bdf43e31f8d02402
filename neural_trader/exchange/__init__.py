"""Market venues for Neural Trader."""

from neural_trader.exchange.base import MarketVenue
from neural_trader.exchange.ccxt_venue import CcxtVenue, RetryConfig, with_retry
from neural_trader.exchange.paper_venue import PaperVenue

__all__ = [
    "MarketVenue",
    "CcxtVenue",
    "PaperVenue",
    "RetryConfig",
    "with_retry",
]
