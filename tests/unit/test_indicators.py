"""Unit tests for technical indicator math."""
import pytest
import numpy as np

from neural_trader.data import indicators


class TestRSI:
    """Test Relative Strength Index."""

    def test_short_history_is_neutral(self):
        assert indicators.rsi([100.0] * 10) == 50.0

    def test_only_gains(self):
        closes = [100.0 + i for i in range(20)]
        assert indicators.rsi(closes) == 100.0

    def test_flat_series(self):
        assert indicators.rsi([100.0] * 20) == 50.0

    def test_mixed_series_in_range(self, wave_series):
        value = indicators.rsi(wave_series(60))
        assert 0.0 < value < 100.0

    def test_equal_gains_and_losses(self):
        closes = [100.0, 101.0] * 8
        # Last 14 changes are 7 up and 7 down
        assert indicators.rsi(closes) == pytest.approx(50.0)


class TestMovingAverages:
    """Test EMA and MACD."""

    def test_ema_of_constant(self):
        assert indicators.ema([5.0] * 30, 12) == pytest.approx(5.0)

    def test_ema_empty(self):
        assert indicators.ema([], 12) == 0.0

    def test_macd_short_history(self):
        result = indicators.macd([100.0] * 10)
        assert result.macd == 0.0
        assert result.histogram == 0.0

    def test_macd_uptrend_positive(self):
        closes = [100.0 + i for i in range(60)]
        result = indicators.macd(closes)
        assert result.macd > 0
        assert result.histogram == pytest.approx(result.macd - result.signal)


class TestBollingerAndVolatility:
    """Test Bollinger bands and return volatility."""

    def test_bands_need_twenty_closes(self):
        assert indicators.bollinger_bands([100.0] * 19) is None

    def test_bands_use_population_std(self):
        closes = [float(i) for i in range(1, 21)]
        bands = indicators.bollinger_bands(closes)
        std = float(np.std(closes))
        assert bands.middle == pytest.approx(10.5)
        assert bands.upper == pytest.approx(10.5 + 2 * std)
        assert bands.lower == pytest.approx(10.5 - 2 * std)

    def test_volatility_constant_returns(self):
        closes = [100.0 * (1.01 ** i) for i in range(30)]
        assert indicators.volatility(closes) == pytest.approx(0.0, abs=1e-12)

    def test_volatility_single_close(self):
        assert indicators.volatility([100.0]) == 0.0


class TestIndicatorBundle:
    """Test the combined bundle."""

    def test_none_below_minimum_history(self):
        assert indicators.compute_indicators([100.0] * 25) is None

    def test_full_bundle(self, wave_series):
        bundle = indicators.compute_indicators(wave_series(60))
        assert bundle is not None
        assert bundle.bollinger is not None
        assert bundle.ema is not None
        assert 0.0 <= bundle.rsi <= 100.0
