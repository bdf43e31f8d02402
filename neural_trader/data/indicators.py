"""Technical indicator math over close-price series.

All functions accept a plain sequence of floats (oldest first) and return
floats, so callers can feed them from candles, backtest frames or tests.
"""
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from neural_trader.core.models import EMA, MACD, BollingerBands, IndicatorBundle

RSI_PERIOD = 14
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
BOLLINGER_PERIOD = 20
BOLLINGER_STD = 2.0

# Below this many closes no indicator bundle is produced
MIN_HISTORY = MACD_SLOW


def rsi(closes: Sequence[float], period: int = RSI_PERIOD) -> float:
    """Relative Strength Index over the last ``period`` changes.

    Returns the neutral value 50 when there is not enough history.
    """
    if len(closes) < period + 1:
        return 50.0

    deltas = np.diff(np.asarray(closes[-(period + 1):], dtype=float))
    gains = deltas[deltas > 0].sum() / period
    losses = -deltas[deltas < 0].sum() / period

    if losses == 0:
        return 100.0 if gains > 0 else 50.0
    rs = gains / losses
    return float(100 - 100 / (1 + rs))


def ema(closes: Sequence[float], period: int) -> float:
    """Latest exponential moving average value."""
    if not closes:
        return 0.0
    series = pd.Series(closes, dtype=float)
    return float(series.ewm(span=period, adjust=False).mean().iloc[-1])


def macd(
    closes: Sequence[float],
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal: int = MACD_SIGNAL,
) -> MACD:
    """MACD line, signal line and histogram at the last bar."""
    if len(closes) < slow:
        return MACD()

    series = pd.Series(closes, dtype=float)
    macd_line = series.ewm(span=fast, adjust=False).mean() - series.ewm(span=slow, adjust=False).mean()
    signal_line = macd_line.ewm(span=signal, adjust=False).mean()

    m = float(macd_line.iloc[-1])
    s = float(signal_line.iloc[-1])
    return MACD(macd=m, signal=s, histogram=m - s)


def bollinger_bands(
    closes: Sequence[float],
    period: int = BOLLINGER_PERIOD,
    num_std: float = BOLLINGER_STD,
) -> Optional[BollingerBands]:
    """Bollinger bands over the last ``period`` closes (population std)."""
    if len(closes) < period:
        return None

    window = np.asarray(closes[-period:], dtype=float)
    middle = float(window.mean())
    std = float(window.std())
    return BollingerBands(
        upper=middle + num_std * std,
        middle=middle,
        lower=middle - num_std * std,
    )


def volatility(closes: Sequence[float], window: int = 20) -> float:
    """Population std-dev of the last ``window`` close-to-close returns."""
    if len(closes) < 2:
        return 0.0

    prices = np.asarray(closes[-(window + 1):], dtype=float)
    returns = np.diff(prices) / prices[:-1]
    if returns.size == 0:
        return 0.0
    return float(returns.std())


def compute_indicators(closes: Sequence[float]) -> Optional[IndicatorBundle]:
    """Full indicator bundle, or None when history is shorter than 26 bars."""
    if len(closes) < MIN_HISTORY:
        return None

    return IndicatorBundle(
        rsi=rsi(closes),
        macd=macd(closes),
        bollinger=bollinger_bands(closes),
        ema=EMA(ema12=ema(closes, MACD_FAST), ema26=ema(closes, MACD_SLOW)),
    )
