"""Integration tests for the full trading pipeline.

These tests drive real components against each other:
- PaperVenue fills and resting protective orders
- MarketDataCache snapshots
- Strategy -> RiskManager -> ExecutionScheduler queue
- PortfolioLedger exits
- PersistenceSubscriber writes to an in-memory database
"""
import pytest
import pytest_asyncio
from decimal import Decimal

from neural_trader.core.config import SchedulerConfig
from neural_trader.core.models import CloseReason, SignalAction, TradingDomain
from neural_trader.core.scheduler import ExecutionScheduler, SchedulerState
from neural_trader.data.market_data import MarketDataCache
from neural_trader.storage.database import PersistenceSubscriber
from neural_trader.strategies.base import BaseStrategy
from neural_trader.strategies.manager import StrategyManager

pytestmark = pytest.mark.integration


class EntryOnceStrategy(BaseStrategy):
    """Goes long the first time it sees each instrument."""

    def __init__(self):
        super().__init__("neural")
        self.seen = set()

    async def analyze(self, snapshot):
        if snapshot.instrument in self.seen:
            return None
        self.seen.add(snapshot.instrument)
        price = snapshot.price
        return self._create_signal(
            snapshot,
            SignalAction.BUY,
            target_price=price * Decimal("1.05"),
            stop_loss=price * Decimal("0.98"),
            take_profit=price * Decimal("1.05"),
            confidence=0.8,
        )


@pytest.fixture
def strategy():
    return EntryOnceStrategy()


@pytest_asyncio.fixture
async def pipeline(paper_venue, event_bus, risk_manager, ledger, test_database, strategy):
    """Scheduler wired to a paper venue with persistence attached."""
    persistence = PersistenceSubscriber(test_database, event_bus)
    cache = MarketDataCache(paper_venue, event_bus, history_window=100)
    scheduler = ExecutionScheduler(
        venue=paper_venue,
        cache=cache,
        strategy_manager=StrategyManager([strategy]),
        risk_manager=risk_manager,
        ledger=ledger,
        instruments=["BTC/USDT", "ETH/USDT"],
        event_bus=event_bus,
        domain=TradingDomain.CRYPTO,
        config=SchedulerConfig(entry_order_type="limit", protective_orders=True),
        signal_ttl_seconds=300,
    )
    scheduler.state = SchedulerState.RUNNING
    yield scheduler, persistence
    if scheduler.state == SchedulerState.RUNNING:
        await scheduler.stop()
    persistence.detach()


# =============================================================================
# Entry Flow Tests
# =============================================================================

class TestEntryFlow:
    """Test signal to filled position."""

    @pytest.mark.asyncio
    async def test_signals_fill_and_persist(self, pipeline, paper_venue, ledger, test_database):
        scheduler, persistence = pipeline

        assert await scheduler.run_prediction_cycle() == 2
        assert await scheduler.run_execution_cycle() == 2
        await persistence.drain()

        positions = ledger.get_open_positions()
        assert {p.instrument for p in positions} == {"BTC/USDT", "ETH/USDT"}
        assert {p.id for p in await test_database.get_open_positions()} == {
            p.id for p in positions
        }
        assert len(await test_database.get_signals()) == 2

        # Two resting exits per position
        assert len(paper_venue.open_orders) == 4
        btc = next(p for p in positions if p.instrument == "BTC/USDT")
        assert paper_venue.holdings["BTC"] == btc.quantity

    @pytest.mark.asyncio
    async def test_repeat_scan_does_not_pyramid(self, pipeline, ledger):
        scheduler, _ = pipeline
        await scheduler.run_prediction_cycle()
        await scheduler.run_execution_cycle()

        strategy = scheduler.strategy_manager.get("neural")
        strategy.seen.clear()

        assert await scheduler.run_prediction_cycle() == 0
        assert len(ledger.get_open_positions()) == 2


# =============================================================================
# Exit Flow Tests
# =============================================================================

class TestExitFlow:
    """Test protective exits and shutdown liquidation."""

    @pytest.mark.asyncio
    async def test_take_profit_closes_everywhere(
        self, pipeline, paper_venue, ledger, test_database, strategy
    ):
        scheduler, persistence = pipeline
        scheduler.instruments = ["BTC/USDT"]
        await scheduler.run_prediction_cycle()
        signal = scheduler.queued_signals[0]
        await scheduler.run_execution_cycle()
        position = ledger.get_open_positions()[0]

        exit_price = signal.take_profit * Decimal("1.01")
        paper_venue.set_price("BTC/USDT", exit_price)
        await scheduler.cache.apply_ticker("BTC/USDT", exit_price)
        await scheduler.run_execution_cycle()
        await persistence.drain()

        assert ledger.get_open_positions() == []
        trade = ledger.get_trade_history()[-1]
        assert trade.reason == CloseReason.TAKE_PROFIT
        assert trade.realized_pnl == (exit_price - position.entry_price) * position.quantity

        # Take-profit filled on the venue, the stop was cancelled
        assert paper_venue.open_orders == {}
        assert "BTC" not in paper_venue.holdings
        assert strategy.trades_closed == 1

        assert await test_database.get_open_positions() == []
        stored = await test_database.get_trades()
        assert [t.position_id for t in stored] == [position.id]
        assert persistence.failures == 0

    @pytest.mark.asyncio
    async def test_stop_liquidates_and_records(
        self, pipeline, paper_venue, ledger, test_database
    ):
        scheduler, persistence = pipeline
        await scheduler.run_prediction_cycle()
        await scheduler.run_execution_cycle()

        await scheduler.stop()
        await persistence.drain()

        assert scheduler.state == SchedulerState.STOPPED
        assert ledger.get_open_positions() == []
        assert paper_venue.holdings == {}
        assert paper_venue.open_orders == {}

        stored = await test_database.get_trades()
        assert len(stored) == 2
        assert {t.reason for t in stored} == {CloseReason.LIQUIDATION}
