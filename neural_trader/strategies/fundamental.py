"""Equity strategy blending fundamental ratios with technical indicators."""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from neural_trader.core.models import IndicatorBundle, MarketSnapshot, Signal, SignalAction
from neural_trader.strategies.base import BaseStrategy


class Fundamentals(BaseModel):
    """Fundamental ratios of one equity. Missing ratios score zero."""
    pe_ratio: Optional[float] = Field(default=None, description="Price / earnings")
    price_to_book: Optional[float] = Field(default=None, description="Price / book value")
    price_to_sales: Optional[float] = Field(default=None, description="Price / sales")
    peg_ratio: Optional[float] = Field(default=None, description="P/E to growth")
    roe: Optional[float] = Field(default=None, description="Return on equity")
    roa: Optional[float] = Field(default=None, description="Return on assets")
    profit_margin: Optional[float] = Field(default=None, description="Net profit margin")
    current_ratio: Optional[float] = Field(default=None, description="Current assets / liabilities")
    quick_ratio: Optional[float] = Field(default=None, description="Quick assets / liabilities")
    debt_to_equity: Optional[float] = Field(default=None, description="Debt / equity")


class FundamentalsProvider(ABC):
    """Source of fundamental data keyed by instrument."""

    @abstractmethod
    async def get_fundamentals(self, instrument: str) -> Optional[Fundamentals]:
        """Latest fundamentals for ``instrument``, or None if not covered."""
        pass


class StaticFundamentalsProvider(FundamentalsProvider):
    """In-memory provider, filled by the caller."""

    def __init__(self, data: Optional[Dict[str, Fundamentals]] = None):
        self._data = dict(data or {})

    def set(self, instrument: str, fundamentals: Fundamentals) -> None:
        self._data[instrument] = fundamentals

    async def get_fundamentals(self, instrument: str) -> Optional[Fundamentals]:
        return self._data.get(instrument)


Tier = Tuple[float, float]


def _below(value: Optional[float], tiers: Sequence[Tier], positive: bool = False) -> float:
    """Points of the first tier whose limit ``value`` is under."""
    if value is None or (positive and value <= 0):
        return 0.0
    for limit, points in tiers:
        if value < limit:
            return points
    return 0.0


def _above(value: Optional[float], tiers: Sequence[Tier]) -> float:
    """Points of the first tier whose limit ``value`` exceeds."""
    if value is None:
        return 0.0
    for limit, points in tiers:
        if value > limit:
            return points
    return 0.0


def value_score(f: Fundamentals) -> float:
    """Cheapness on P/E, P/B, P/S and PEG (0-100)."""
    score = (
        _below(f.pe_ratio, [(15, 25), (20, 15), (25, 10)], positive=True)
        + _below(f.price_to_book, [(1, 25), (2, 15), (3, 10)], positive=True)
        + _below(f.price_to_sales, [(1, 25), (2, 15), (3, 10)], positive=True)
        + _below(f.peg_ratio, [(1, 25), (1.5, 15), (2, 10)], positive=True)
    )
    return min(100.0, score)


def growth_score(f: Fundamentals) -> float:
    """Profitability on ROE and profit margin (0-100)."""
    score = (
        _above(f.roe, [(0.20, 50), (0.15, 30), (0.10, 20)])
        + _above(f.profit_margin, [(0.20, 50), (0.15, 30), (0.10, 20)])
    )
    return min(100.0, score)


def quality_score(f: Fundamentals) -> float:
    """ROA, liquidity and leverage (0-100)."""
    score = (
        _above(f.roa, [(0.15, 33), (0.10, 20), (0.05, 10)])
        + _above(f.current_ratio, [(2, 33), (1.5, 20), (1, 10)])
        + _below(f.debt_to_equity, [(0.3, 34), (0.5, 20), (1, 10)])
    )
    return min(100.0, score)


def health_score(f: Fundamentals) -> float:
    """Quick ratio and leverage (0-100)."""
    score = (
        _above(f.quick_ratio, [(1.5, 50), (1, 30), (0.5, 15)])
        + _below(f.debt_to_equity, [(0.5, 50), (1, 30), (2, 15)])
    )
    return min(100.0, score)


def fundamental_scores(f: Fundamentals) -> Dict[str, float]:
    scores = {
        'value': value_score(f),
        'growth': growth_score(f),
        'quality': quality_score(f),
        'health': health_score(f),
    }
    scores['overall'] = sum(scores.values()) / 4
    return scores


def technical_score(indicators: Optional[IndicatorBundle]) -> float:
    """RSI extremes and MACD direction folded into 0-100; 50 is neutral."""
    if indicators is None:
        return 50.0
    score = 50.0
    if indicators.rsi < 30:
        score += 20
    elif indicators.rsi > 70:
        score -= 20
    histogram = indicators.macd.histogram
    if histogram > 0:
        score += 20
    elif histogram < 0:
        score -= 20
    return max(0.0, min(100.0, score))


class FundamentalStrategy(BaseStrategy):
    """
    Scores an equity on value, growth, quality and financial health, then
    blends the result with a technical score from the snapshot indicators.

    BUY: blended score above ``buy_threshold``
    SELL: blended score below ``sell_threshold``

    Targets sit two volatilities away, stops one volatility away. Instruments
    without fundamentals from the provider get no signal.
    """

    DEFAULT_VOLATILITY = 0.02
    MIN_VOLATILITY = 0.005
    MAX_VOLATILITY = 0.2

    def __init__(
        self,
        instruments: Optional[List[str]] = None,
        provider: Optional[FundamentalsProvider] = None,
        fundamental_weight: float = 0.5,
        buy_threshold: float = 70.0,
        sell_threshold: float = 30.0,
        **kwargs
    ):
        super().__init__("fundamental", instruments, **kwargs)
        if not 0.0 <= fundamental_weight <= 1.0:
            raise ValueError("fundamental_weight must be within [0, 1]")
        self.provider = provider or StaticFundamentalsProvider()
        self.fundamental_weight = fundamental_weight
        self.buy_threshold = buy_threshold
        self.sell_threshold = sell_threshold

    async def analyze(self, snapshot: MarketSnapshot) -> Optional[Signal]:
        fundamentals = await self.provider.get_fundamentals(snapshot.instrument)
        if fundamentals is None:
            self.logger.debug("strategy.no_fundamentals", instrument=snapshot.instrument)
            return None

        scores = fundamental_scores(fundamentals)
        technical = technical_score(snapshot.indicators)
        blended = (
            scores['overall'] * self.fundamental_weight
            + technical * (1 - self.fundamental_weight)
        )

        if blended > self.buy_threshold:
            action = SignalAction.BUY
            confidence = blended / 100
        elif blended < self.sell_threshold:
            action = SignalAction.SELL
            confidence = (100 - blended) / 100
        else:
            return None

        vol = snapshot.volatility or self.DEFAULT_VOLATILITY
        vol = Decimal(str(max(self.MIN_VOLATILITY, min(self.MAX_VOLATILITY, vol))))
        price = snapshot.price
        sign = 1 if action == SignalAction.BUY else -1
        target = price * (1 + sign * 2 * vol)

        return self._create_signal(
            snapshot,
            action,
            target_price=target,
            stop_loss=price * (1 - sign * vol),
            take_profit=target,
            confidence=min(1.0, confidence),
            timeframe="1d" if scores['overall'] > technical else "1h",
            metadata={
                'fundamental_score': scores['overall'],
                'technical_score': technical,
                'scores': scores,
            },
        )
