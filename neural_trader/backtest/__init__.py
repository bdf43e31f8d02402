"""
Neural Trader Backtest Module.

Usage:
    from neural_trader.backtest import Backtester, load_history

    market_data = await load_history(venue, ["BTC/USDT"], "1h", 500)
    result = await Backtester(strategy_manager, risk_manager).run(market_data)
    print(result.summary())
"""

from neural_trader.backtest.engine import BacktestResult, Backtester, load_history

__all__ = ["Backtester", "BacktestResult", "load_history"]
