"""Unit tests for performance statistics."""
import math
import pytest
import numpy as np
from decimal import Decimal

from neural_trader.core.models import ClosedTrade, SignalAction
from neural_trader.portfolio.performance import (
    PerformanceAggregator,
    max_drawdown,
    sharpe_ratio,
    value_at_risk,
)


def trade(pnl: str, entry: str = "100", quantity: str = "1") -> ClosedTrade:
    entry_price = Decimal(entry)
    qty = Decimal(quantity)
    return ClosedTrade(
        position_id=f"pos-{pnl}",
        instrument="BTC/USDT",
        side=SignalAction.BUY,
        entry_price=entry_price,
        exit_price=entry_price + Decimal(pnl) / qty,
        quantity=qty,
        realized_pnl=Decimal(pnl),
    )


# =============================================================================
# Aggregator Tests
# =============================================================================

class TestPerformanceAggregator:
    """Test the metrics computed over closed trades."""

    def test_empty_history_is_all_zero(self):
        metrics = PerformanceAggregator().compute([])

        assert metrics.total_trades == 0
        assert metrics.win_rate == 0.0
        assert metrics.sharpe_ratio == 0.0
        assert metrics.max_drawdown == 0.0
        assert metrics.value_at_risk == 0.0
        assert metrics.equity_curve == []

    def test_win_loss_statistics(self):
        metrics = PerformanceAggregator().compute(
            [trade("10"), trade("-5"), trade("20"), trade("-5")]
        )

        assert metrics.total_trades == 4
        assert metrics.winning_trades == 2
        assert metrics.losing_trades == 2
        assert metrics.win_rate == pytest.approx(0.5)
        assert metrics.total_pnl == pytest.approx(20.0)
        assert metrics.average_win == pytest.approx(15.0)
        assert metrics.average_loss == pytest.approx(-5.0)
        assert metrics.gross_profit == pytest.approx(30.0)
        assert metrics.gross_loss == pytest.approx(10.0)
        assert metrics.profit_factor == pytest.approx(3.0)
        assert metrics.expectancy == pytest.approx(0.5 * 15 - 0.5 * 5)
        assert metrics.best_trade == pytest.approx(20.0)
        assert metrics.worst_trade == pytest.approx(-5.0)

    def test_profit_factor_without_losses(self):
        metrics = PerformanceAggregator().compute([trade("10"), trade("5")])
        assert metrics.profit_factor == pytest.approx(15.0)

    def test_equity_curve_starts_from_baseline(self):
        metrics = PerformanceAggregator(baseline_equity=1000).compute(
            [trade("10"), trade("-4")]
        )
        assert metrics.equity_curve == [pytest.approx(1010.0), pytest.approx(1006.0)]


# =============================================================================
# Metric Function Tests
# =============================================================================

class TestMetricFunctions:
    """Test Sharpe, drawdown and VaR helpers."""

    def test_sharpe_uses_population_std(self):
        pnls = np.array([1.0, 3.0])
        assert sharpe_ratio(pnls) == pytest.approx(2.0 / 1.0 * math.sqrt(252))

    def test_sharpe_zero_when_flat(self):
        assert sharpe_ratio(np.array([5.0, 5.0, 5.0])) == 0.0
        assert sharpe_ratio(np.array([])) == 0.0

    def test_drawdown_from_positive_peak(self):
        assert max_drawdown(np.array([10.0, 15.0, 6.0, 20.0])) == pytest.approx(0.6)

    def test_drawdown_ignored_before_positive_peak(self):
        assert max_drawdown(np.array([-5.0, -10.0])) == 0.0

    def test_value_at_risk_quantile(self):
        returns = [0.05, -0.02, 0.01, -0.10, 0.03]
        # floor(0.05 * 5) = 0 -> worst return
        assert value_at_risk(returns) == pytest.approx(-0.10)

    def test_value_at_risk_larger_sample(self):
        returns = [i / 100 for i in range(-20, 20)]
        # floor(0.05 * 40) = 2 -> third worst
        assert value_at_risk(returns) == pytest.approx(-0.18)

    def test_value_at_risk_empty(self):
        assert value_at_risk([]) == 0.0
