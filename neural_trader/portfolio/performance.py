"""Performance statistics over the closed-trade history."""
import math
from typing import Sequence

import numpy as np

from neural_trader.core.models import ClosedTrade, PerformanceMetrics

TRADING_DAYS_PER_YEAR = 252
VAR_CONFIDENCE = 0.95


class PerformanceAggregator:
    """
    Computes ``PerformanceMetrics`` from a sequence of closed trades.

    Sharpe uses per-trade PnL with the population standard deviation,
    annualized by sqrt(252). Max drawdown walks the cumulative PnL and is
    only measured once the running peak is positive. The equity curve is
    the baseline plus cumulative PnL after each trade.
    """

    def __init__(self, baseline_equity: float = 10000.0):
        self.baseline_equity = float(baseline_equity)

    def compute(self, trades: Sequence[ClosedTrade]) -> PerformanceMetrics:
        if not trades:
            return PerformanceMetrics()

        pnls = np.array([float(t.realized_pnl) for t in trades])
        wins = pnls[pnls > 0]
        losses = pnls[pnls < 0]

        total = len(pnls)
        win_rate = len(wins) / total
        gross_profit = float(wins.sum())
        gross_loss = float(abs(losses.sum()))
        average_win = float(wins.mean()) if wins.size else 0.0
        average_loss = float(losses.mean()) if losses.size else 0.0

        if gross_loss > 0:
            profit_factor = gross_profit / gross_loss
        else:
            profit_factor = gross_profit

        cumulative = np.cumsum(pnls)

        return PerformanceMetrics(
            total_trades=total,
            winning_trades=int(wins.size),
            losing_trades=int(losses.size),
            win_rate=win_rate,
            total_pnl=float(pnls.sum()),
            average_pnl=float(pnls.mean()),
            average_win=average_win,
            average_loss=average_loss,
            best_trade=float(pnls.max()),
            worst_trade=float(pnls.min()),
            gross_profit=gross_profit,
            gross_loss=gross_loss,
            profit_factor=profit_factor,
            expectancy=win_rate * average_win - (1 - win_rate) * abs(average_loss),
            sharpe_ratio=sharpe_ratio(pnls),
            max_drawdown=max_drawdown(cumulative),
            value_at_risk=value_at_risk([t.return_pct for t in trades]),
            equity_curve=[self.baseline_equity + float(v) for v in cumulative],
        )


def sharpe_ratio(pnls: np.ndarray) -> float:
    """Annualized mean/std of per-trade PnL; 0 when std is 0."""
    if pnls.size == 0:
        return 0.0
    std = float(pnls.std())
    if std == 0 or not math.isfinite(std):
        return 0.0
    return float(pnls.mean()) / std * math.sqrt(TRADING_DAYS_PER_YEAR)


def max_drawdown(cumulative: np.ndarray) -> float:
    """Largest (peak - value) / peak over a cumulative PnL path."""
    peak = 0.0
    worst = 0.0
    for value in cumulative:
        value = float(value)
        if value > peak:
            peak = value
        if peak > 0:
            worst = max(worst, (peak - value) / peak)
    return worst


def value_at_risk(returns: Sequence[float], confidence: float = VAR_CONFIDENCE) -> float:
    """Historical VaR: the (1 - confidence) quantile of per-trade returns."""
    if not returns:
        return 0.0
    ordered = sorted(returns)
    index = int(math.floor((1 - confidence) * len(ordered)))
    return float(ordered[min(index, len(ordered) - 1)])
