"""Unit tests for the signal generator and trading strategies."""
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock

from neural_trader.core.exceptions import PredictorError
from neural_trader.core.models import (
    BollingerBands, ClosedTrade, EMA, Forecast, ForecastDirection,
    IndicatorBundle, MACD, MarketSnapshot, SignalAction
)
from neural_trader.strategies import (
    FundamentalStrategy,
    Fundamentals,
    MeanReversionStrategy,
    MomentumStrategy,
    PredictorStrategy,
    SignalGenerator,
    StaticFundamentalsProvider,
    StrategyManager,
    build_strategy_manager,
    create_strategy,
)
from neural_trader.strategies.base import BaseStrategy
from neural_trader.strategies.fundamental import fundamental_scores, value_score


def snapshot_with(price="100", rsi=50.0, histogram=0.0, bands=(110.0, 100.0, 90.0),
                  instrument="BTC/USDT"):
    upper, middle, lower = bands
    return MarketSnapshot(
        instrument=instrument,
        price=Decimal(price),
        volume=Decimal("10"),
        volatility=0.02,
        indicators=IndicatorBundle(
            rsi=rsi,
            macd=MACD(macd=histogram, signal=0.0, histogram=histogram),
            bollinger=BollingerBands(upper=upper, middle=middle, lower=lower),
            ema=EMA(ema12=100.0, ema26=100.0),
        ),
    )


def forecast(direction=ForecastDirection.UP, confidence=0.8, predicted="103"):
    return Forecast(
        confidence=confidence,
        direction=direction,
        predicted_price=Decimal(predicted),
    )


class FixedStrategy(BaseStrategy):
    """Strategy returning a preset result."""

    def __init__(self, name, result=None, error=None, instruments=None):
        super().__init__(name, instruments)
        self.result = result
        self.error = error
        self.calls = 0

    async def analyze(self, snapshot):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


# =============================================================================
# Signal Generator Tests
# =============================================================================

class TestSignalGenerator:
    """Test forecast-to-signal conversion."""

    @pytest.fixture
    def generator(self):
        return SignalGenerator(threshold=0.65, min_price_change=0.01,
                               stop_loss_pct=0.02, take_profit_pct=0.05)

    def test_up_forecast_builds_buy(self, generator):
        signal = generator.generate(snapshot_with(), forecast())

        assert signal.action == SignalAction.BUY
        assert signal.stop_loss == Decimal("98")
        assert signal.take_profit == Decimal("105")
        assert signal.target_price == Decimal("103")
        assert signal.confidence == pytest.approx(0.8)
        assert signal.metadata["price_change"] == pytest.approx(0.03)
        assert signal.metadata["volatility"] == pytest.approx(0.02)
        assert signal.metadata["rsi"] == pytest.approx(50.0)

    def test_down_forecast_builds_sell(self, generator):
        signal = generator.generate(
            snapshot_with(), forecast(ForecastDirection.DOWN, predicted="96")
        )

        assert signal.action == SignalAction.SELL
        assert signal.stop_loss == Decimal("102")
        assert signal.take_profit == Decimal("95")

    def test_low_confidence_yields_nothing(self, generator):
        assert generator.generate(snapshot_with(), forecast(confidence=0.6)) is None

    def test_small_move_yields_nothing(self, generator):
        assert generator.generate(snapshot_with(), forecast(predicted="100.5")) is None

    def test_neutral_forecast_yields_nothing(self, generator):
        result = generator.generate(snapshot_with(), forecast(ForecastDirection.NEUTRAL))
        assert result is None

    def test_missing_forecast(self, generator):
        assert generator.generate(snapshot_with(), None) is None

    def test_threshold_is_inclusive(self, generator):
        assert generator.generate(snapshot_with(), forecast(confidence=0.65)) is not None


# =============================================================================
# Momentum Strategy Tests
# =============================================================================

class TestMomentumStrategy:
    """Test RSI/MACD momentum entries."""

    @pytest.mark.asyncio
    async def test_oversold_with_rising_histogram_buys(self):
        strategy = MomentumStrategy()
        signal = await strategy.analyze(snapshot_with(rsi=25.0, histogram=0.3))

        assert signal.action == SignalAction.BUY
        assert signal.strategy == "momentum"
        assert signal.confidence == pytest.approx(0.7)
        assert strategy.signals_generated == 1

    @pytest.mark.asyncio
    async def test_overbought_with_falling_histogram_sells(self):
        signal = await MomentumStrategy().analyze(snapshot_with(rsi=78.0, histogram=-0.3))
        assert signal.action == SignalAction.SELL
        assert signal.take_profit < signal.price < signal.stop_loss

    @pytest.mark.asyncio
    async def test_oversold_without_confirmation(self):
        assert await MomentumStrategy().analyze(snapshot_with(rsi=25.0, histogram=-0.3)) is None

    @pytest.mark.asyncio
    async def test_no_indicators(self):
        snapshot = MarketSnapshot(instrument="BTC/USDT", price=Decimal("100"))
        assert await MomentumStrategy().analyze(snapshot) is None


# =============================================================================
# Mean Reversion Strategy Tests
# =============================================================================

class TestMeanReversionStrategy:
    """Test Bollinger fades."""

    @pytest.mark.asyncio
    async def test_below_lower_band_buys_to_middle(self):
        signal = await MeanReversionStrategy().analyze(snapshot_with(price="88"))

        assert signal.action == SignalAction.BUY
        assert signal.take_profit == Decimal("100.0")
        assert signal.stop_loss < Decimal("88")

    @pytest.mark.asyncio
    async def test_above_upper_band_sells(self):
        signal = await MeanReversionStrategy().analyze(snapshot_with(price="112"))
        assert signal.action == SignalAction.SELL
        assert signal.take_profit == Decimal("100.0")

    @pytest.mark.asyncio
    async def test_inside_bands(self):
        assert await MeanReversionStrategy().analyze(snapshot_with(price="101")) is None


# =============================================================================
# Predictor Strategy Tests
# =============================================================================

class TestPredictorStrategy:
    """Test the forecast-driven strategy."""

    @pytest.mark.asyncio
    async def test_uses_predictor_forecast(self):
        predictor = AsyncMock()
        predictor.predict = AsyncMock(return_value=forecast())
        strategy = PredictorStrategy(predictor=predictor)

        signal = await strategy.analyze(snapshot_with())

        assert signal.action == SignalAction.BUY
        assert signal.strategy == "neural"
        assert strategy.signals_generated == 1

    @pytest.mark.asyncio
    async def test_predictor_error_yields_nothing(self):
        predictor = AsyncMock()
        predictor.predict = AsyncMock(side_effect=PredictorError("no data"))
        strategy = PredictorStrategy(predictor=predictor)

        assert await strategy.analyze(snapshot_with()) is None
        assert strategy.signals_generated == 0


# =============================================================================
# Fundamental Strategy Tests
# =============================================================================

STRONG = Fundamentals(
    pe_ratio=12, price_to_book=0.8, price_to_sales=0.9, peg_ratio=0.8,
    roe=0.25, profit_margin=0.25, roa=0.2, current_ratio=2.5,
    quick_ratio=2.0, debt_to_equity=0.2,
)
WEAK = Fundamentals(
    pe_ratio=40, price_to_book=5, price_to_sales=5, peg_ratio=3,
    roe=0.05, profit_margin=0.05, roa=0.01, current_ratio=0.8,
    quick_ratio=0.3, debt_to_equity=2.5,
)


class TestFundamentalStrategy:
    """Test fundamental scoring blended with technicals."""

    def fundamental(self, data):
        return FundamentalStrategy(provider=StaticFundamentalsProvider(data))

    def test_strong_fundamentals_score_full(self):
        assert fundamental_scores(STRONG) == {
            'value': 100.0, 'growth': 100.0, 'quality': 100.0,
            'health': 100.0, 'overall': 100.0,
        }

    def test_weak_and_missing_fundamentals_score_zero(self):
        assert fundamental_scores(WEAK)['overall'] == 0.0
        assert fundamental_scores(Fundamentals())['overall'] == 0.0

    def test_negative_earnings_get_no_value_points(self):
        assert value_score(Fundamentals(pe_ratio=-5)) == 0.0
        assert value_score(Fundamentals(pe_ratio=18)) == 15.0

    @pytest.mark.asyncio
    async def test_strong_fundamentals_with_oversold_buy(self):
        strategy = self.fundamental({"AAPL": STRONG})

        signal = await strategy.analyze(snapshot_with(rsi=25.0, histogram=0.5, instrument="AAPL"))

        assert signal.action == SignalAction.BUY
        assert signal.strategy == "fundamental"
        assert signal.confidence == pytest.approx(0.95)
        assert signal.target_price == Decimal("104")
        assert signal.stop_loss == Decimal("98")
        assert signal.timeframe == "1d"
        assert signal.metadata["technical_score"] == 90.0

    @pytest.mark.asyncio
    async def test_weak_fundamentals_with_overbought_sell(self):
        strategy = self.fundamental({"AAPL": WEAK})

        signal = await strategy.analyze(snapshot_with(rsi=80.0, histogram=-0.5, instrument="AAPL"))

        assert signal.action == SignalAction.SELL
        assert signal.confidence == pytest.approx(0.95)
        assert signal.take_profit == Decimal("96")
        assert signal.stop_loss == Decimal("102")
        assert signal.timeframe == "1h"

    @pytest.mark.asyncio
    async def test_conflicting_scores_yield_nothing(self):
        strategy = self.fundamental({"AAPL": WEAK})
        assert await strategy.analyze(snapshot_with(rsi=25.0, histogram=0.5, instrument="AAPL")) is None

    @pytest.mark.asyncio
    async def test_uncovered_instrument_yields_nothing(self):
        strategy = self.fundamental({"AAPL": STRONG})

        assert await strategy.analyze(snapshot_with(rsi=25.0, histogram=0.5, instrument="MSFT")) is None
        assert strategy.signals_generated == 0

    @pytest.mark.asyncio
    async def test_registered_variant_takes_provider(self):
        provider = StaticFundamentalsProvider()
        strategy = create_strategy("fundamental", provider=provider)
        snapshot = snapshot_with(rsi=25.0, histogram=0.5, instrument="AAPL")

        assert isinstance(strategy, FundamentalStrategy)
        assert await strategy.analyze(snapshot) is None

        provider.set("AAPL", STRONG)
        assert (await strategy.analyze(snapshot)).action == SignalAction.BUY

    def test_weight_out_of_range(self):
        with pytest.raises(ValueError):
            FundamentalStrategy(fundamental_weight=1.5)


# =============================================================================
# Strategy Manager Tests
# =============================================================================

class TestStrategyManager:
    """Test registry and failure isolation."""

    @pytest.mark.asyncio
    async def test_failing_strategy_does_not_block_others(self, sample_buy_signal):
        broken = FixedStrategy("broken", error=RuntimeError("boom"))
        working = FixedStrategy("working", result=sample_buy_signal)
        manager = StrategyManager([broken, working])

        signals = await manager.analyze_all(snapshot_with())

        assert signals == [sample_buy_signal]
        assert broken.calls == 1

    @pytest.mark.asyncio
    async def test_paused_and_foreign_strategies_skipped(self, sample_buy_signal):
        paused = FixedStrategy("paused", result=sample_buy_signal)
        paused.pause()
        other = FixedStrategy("eth_only", result=sample_buy_signal, instruments=["ETH/USDT"])
        manager = StrategyManager([paused, other])

        assert await manager.analyze_all(snapshot_with()) == []
        assert paused.calls == 0
        assert other.calls == 0

    @pytest.mark.asyncio
    async def test_analyze_with_unknown_name(self):
        with pytest.raises(KeyError):
            await StrategyManager().analyze_with("missing", snapshot_with())

    def test_register_replaces_same_name(self):
        manager = StrategyManager([FixedStrategy("a"), FixedStrategy("a")])
        assert len(manager) == 1
        assert manager.unregister("a") is True
        assert manager.unregister("a") is False

    def test_create_strategy_unknown(self):
        with pytest.raises(KeyError, match="Unknown strategy"):
            create_strategy("martingale")

    def test_build_from_names(self):
        manager = build_strategy_manager(["momentum", "mean_reversion"])
        assert manager.names() == ["momentum", "mean_reversion"]

    @pytest.mark.asyncio
    async def test_position_closed_updates_stats(self):
        strategy = FixedStrategy("x")
        await strategy.on_position_closed(ClosedTrade(
            position_id="p", instrument="BTC/USDT", side=SignalAction.BUY,
            entry_price=Decimal("100"), exit_price=Decimal("103"),
            quantity=Decimal("1"), realized_pnl=Decimal("3"),
        ))
        stats = strategy.get_stats()
        assert stats["trades_closed"] == 1
        assert stats["total_pnl"] == "3"
