"""
Neural Trader Backtest - historical replay through the live pipeline.

Candles are replayed bar by bar through the same strategies, risk manager
and ledger the scheduler uses:
- Each bar rebuilds the instrument snapshot (candle window + indicators)
- The ledger is marked to the close, firing stop loss / take profit
- New signals are validated and sized, then filled at the close
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import structlog

from neural_trader.core.events import EventBus, EventType
from neural_trader.core.models import (
    Candle, ClosedTrade, CloseReason, PerformanceMetrics, Signal, SignalAction
)
from neural_trader.data.market_data import MarketDataCache
from neural_trader.exchange.base import MarketVenue
from neural_trader.portfolio.ledger import PortfolioLedger
from neural_trader.risk.risk_manager import RiskManager
from neural_trader.strategies.manager import StrategyManager

logger = structlog.get_logger(__name__)


@dataclass
class BacktestResult:
    """Complete backtest results."""

    start_date: Optional[datetime]
    end_date: Optional[datetime]
    initial_balance: Decimal
    final_balance: Decimal
    total_return_pct: float

    # Equity-curve risk metrics
    max_drawdown_pct: float
    volatility_annual: float

    # Trade statistics from the ledger history
    metrics: PerformanceMetrics
    trades: List[ClosedTrade] = field(default_factory=list)

    bars_processed: int = 0
    signals_generated: int = 0
    signals_rejected: int = 0
    equity_curve: pd.DataFrame = field(default_factory=pd.DataFrame)

    def summary(self) -> Dict[str, object]:
        return {
            "start": self.start_date.isoformat() if self.start_date else None,
            "end": self.end_date.isoformat() if self.end_date else None,
            "initial_balance": str(self.initial_balance),
            "final_balance": str(self.final_balance),
            "total_return_pct": round(self.total_return_pct, 2),
            "max_drawdown_pct": round(self.max_drawdown_pct, 2),
            "total_trades": self.metrics.total_trades,
            "win_rate": round(self.metrics.win_rate, 3),
            "sharpe_ratio": round(self.metrics.sharpe_ratio, 3),
            "bars_processed": self.bars_processed,
            "signals_generated": self.signals_generated,
            "signals_rejected": self.signals_rejected,
        }


class Backtester:
    """
    Replays historical candles through strategies, risk and a fresh ledger.

    Fills happen at the bar close, shifted by ``slippage_pct`` against the
    trade. BUY entries that exceed the available quote balance are skipped.
    """

    def __init__(
        self,
        strategy_manager: StrategyManager,
        risk_manager: RiskManager,
        initial_balance: Decimal = Decimal("10000"),
        quote_currency: str = "USDT",
        slippage_pct: Decimal = Decimal("0"),
        warmup_bars: int = 50,
        history_window: int = 500,
        close_at_end: bool = True,
    ):
        self.strategy_manager = strategy_manager
        self.risk_manager = risk_manager
        self.initial_balance = Decimal(str(initial_balance))
        self.quote_currency = quote_currency
        self.slippage_pct = Decimal(str(slippage_pct))
        self.warmup_bars = warmup_bars
        self.history_window = history_window
        self.close_at_end = close_at_end

        logger.info(
            "backtest_engine.initialized",
            initial_balance=str(self.initial_balance),
            strategies=strategy_manager.names(),
            slippage_pct=str(self.slippage_pct),
        )

    async def run(self, market_data: Dict[str, List[Candle]]) -> BacktestResult:
        """
        Run the replay.

        Args:
            market_data: Historical candles per instrument, any order

        Returns:
            BacktestResult with the final balance and performance metrics
        """
        event_bus = EventBus()
        event_bus.subscribe(EventType.POSITION_CLOSED, self._credit_strategy)
        ledger = PortfolioLedger(
            initial_balances={self.quote_currency: self.initial_balance},
            event_bus=event_bus,
            baseline_equity=float(self.initial_balance),
        )
        cache = MarketDataCache(venue=None, history_window=self.history_window)
        self.risk_manager.update_balance(self.initial_balance)

        series = {
            instrument: sorted(candles, key=lambda c: c.timestamp)
            for instrument, candles in market_data.items()
        }
        timestamps = sorted({c.timestamp for candles in series.values() for c in candles})
        by_time = {
            instrument: {c.timestamp: c for c in candles}
            for instrument, candles in series.items()
        }
        bars_seen: Dict[str, int] = {instrument: 0 for instrument in series}

        logger.info("backtest.starting", instruments=list(series), bars=len(timestamps))

        equity_records = []
        signals_generated = 0
        signals_rejected = 0

        for i, timestamp in enumerate(timestamps):
            if i and i % 1000 == 0:
                logger.info(
                    "backtest.progress",
                    current=timestamp.isoformat(),
                    progress=f"{i/len(timestamps)*100:.1f}%",
                )

            updated = []
            for instrument in series:
                candle = by_time[instrument].get(timestamp)
                if candle is None:
                    continue
                cache.append_candle(instrument, candle)
                bars_seen[instrument] += 1
                updated.append(instrument)

            prices = cache.price_map()
            await ledger.update_prices(prices)
            self.risk_manager.update_balance(ledger.get_total_value(prices))

            for instrument in updated:
                if bars_seen[instrument] < self.warmup_bars:
                    continue
                snapshot = cache.get_snapshot(instrument)
                for signal in await self.strategy_manager.analyze_all(snapshot):
                    signals_generated += 1
                    if not await self._process_signal(signal, ledger, prices):
                        signals_rejected += 1

            equity_records.append({
                "timestamp": timestamp,
                "total": float(ledger.get_total_value(prices)),
            })

        if self.close_at_end:
            prices = cache.price_map()
            for position in ledger.get_open_positions():
                await ledger.close_position(
                    position.id, prices.get(position.instrument), CloseReason.LIQUIDATION
                )

        result = self._calculate_results(
            ledger, equity_records, len(timestamps), signals_generated, signals_rejected
        )
        logger.info(
            "backtest.complete",
            total_return=f"{result.total_return_pct:.2f}%",
            max_drawdown=f"{result.max_drawdown_pct:.2f}%",
            trades=result.metrics.total_trades,
        )
        return result

    async def _process_signal(
        self, signal: Signal, ledger: PortfolioLedger, prices: Dict[str, Decimal]
    ) -> bool:
        """Validate, size and fill one signal; False when nothing was opened."""
        check = self.risk_manager.validate_signal(signal, ledger.get_open_positions())
        if not check.passed:
            return False

        close = prices.get(signal.instrument, signal.price)
        if signal.action == SignalAction.BUY:
            fill_price = close * (Decimal("1") + self.slippage_pct)
        else:
            fill_price = close * (Decimal("1") - self.slippage_pct)

        quantity = self.risk_manager.size_position(signal, ledger.get_total_value(prices))
        if quantity <= 0:
            return False

        if signal.action == SignalAction.BUY:
            available = ledger.get_balance(self.quote_currency)
            if quantity * fill_price > available:
                logger.debug(
                    "backtest.insufficient_balance",
                    instrument=signal.instrument,
                    required=str(quantity * fill_price),
                    available=str(available),
                )
                return False

        await ledger.open_position(
            instrument=signal.instrument,
            side=signal.action,
            quantity=quantity,
            entry_price=fill_price,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            metadata={"signal_id": signal.id, "strategy": signal.strategy},
        )
        return True

    async def _credit_strategy(self, payload: Dict) -> None:
        strategy = self.strategy_manager.get(payload["position"].metadata.get("strategy", ""))
        if strategy is not None:
            await strategy.on_position_closed(payload["trade"])

    def _calculate_results(
        self,
        ledger: PortfolioLedger,
        equity_records: List[Dict],
        bars: int,
        signals_generated: int,
        signals_rejected: int,
    ) -> BacktestResult:
        equity = pd.DataFrame(equity_records, columns=["timestamp", "total"])
        final_balance = ledger.get_total_value()

        max_dd = 0.0
        volatility = 0.0
        if not equity.empty:
            equity["peak"] = equity["total"].cummax()
            equity["drawdown"] = (equity["peak"] - equity["total"]) / equity["peak"] * 100
            equity["returns"] = equity["total"].pct_change().fillna(0.0)
            max_dd = float(equity["drawdown"].max())
            volatility = float(equity["returns"].std(ddof=0) * np.sqrt(252) * 100)

        total_return = float(
            (final_balance - self.initial_balance) / self.initial_balance * 100
        ) if self.initial_balance > 0 else 0.0

        trades = ledger.get_trade_history(limit=ledger.history_limit)
        return BacktestResult(
            start_date=equity["timestamp"].iloc[0] if not equity.empty else None,
            end_date=equity["timestamp"].iloc[-1] if not equity.empty else None,
            initial_balance=self.initial_balance,
            final_balance=final_balance,
            total_return_pct=total_return,
            max_drawdown_pct=max_dd,
            volatility_annual=volatility,
            metrics=ledger.get_performance_metrics(),
            trades=trades,
            bars_processed=bars,
            signals_generated=signals_generated,
            signals_rejected=signals_rejected,
            equity_curve=equity,
        )


async def load_history(
    venue: MarketVenue, instruments: List[str], timeframe: str = "1h", count: int = 500
) -> Dict[str, List[Candle]]:
    """Fetch candle history for each instrument from a venue."""
    market_data = {}
    for instrument in instruments:
        candles = await venue.fetch_candles(instrument, timeframe, count)
        logger.info("backtest.history_loaded", instrument=instrument, candles=len(candles))
        market_data[instrument] = candles
    return market_data
