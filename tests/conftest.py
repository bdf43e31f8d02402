"""Pytest fixtures and utilities for the Neural Trader test suite."""
import math
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Sequence
from unittest.mock import AsyncMock, MagicMock

from neural_trader.core.config import RiskConfig, SchedulerConfig
from neural_trader.core.events import EventBus
from neural_trader.core.models import (
    Candle, IndicatorBundle, MACD, BollingerBands, EMA, MarketSnapshot,
    Position, Signal, SignalAction
)
from neural_trader.exchange.paper_venue import PaperVenue
from neural_trader.portfolio.ledger import PortfolioLedger
from neural_trader.risk.risk_manager import RiskManager
from neural_trader.storage.database import Database


# =============================================================================
# Helpers
# =============================================================================

def create_candles(
    closes: Sequence[float],
    start: Optional[datetime] = None,
    step: timedelta = timedelta(hours=1),
) -> List[Candle]:
    """Candles whose open is the previous close, with a 0.5% wick either side."""
    start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
    candles = []
    previous = closes[0]
    for i, close in enumerate(closes):
        high = max(previous, close) * 1.005
        low = min(previous, close) * 0.995
        candles.append(Candle(
            timestamp=start + step * i,
            open=Decimal(str(round(previous, 4))),
            high=Decimal(str(round(high, 4))),
            low=Decimal(str(round(low, 4))),
            close=Decimal(str(round(close, 4))),
            volume=Decimal("100"),
        ))
        previous = close
    return candles


def wave_closes(count: int = 120, base: float = 100.0, amplitude: float = 8.0) -> List[float]:
    """Deterministic oscillating close series."""
    return [base + amplitude * math.sin(i / 6.0) for i in range(count)]


def build_signal(
    instrument: str = "BTC/USDT",
    action: SignalAction = SignalAction.BUY,
    price: str = "100",
    stop_loss: Optional[str] = None,
    take_profit: Optional[str] = None,
    target_price: Optional[str] = None,
    confidence: float = 0.8,
    volatility: Optional[float] = 0.05,
    strategy: str = "neural",
    created_at: Optional[datetime] = None,
) -> Signal:
    """Signal with sensible protective levels for its side."""
    p = Decimal(price)
    if action == SignalAction.BUY:
        stop = Decimal(stop_loss) if stop_loss else p * Decimal("0.98")
        take = Decimal(take_profit) if take_profit else p * Decimal("1.05")
    else:
        stop = Decimal(stop_loss) if stop_loss else p * Decimal("1.02")
        take = Decimal(take_profit) if take_profit else p * Decimal("0.95")
    extra = {}
    if created_at is not None:
        extra["created_at"] = created_at
    return Signal(
        instrument=instrument,
        action=action,
        price=p,
        stop_loss=stop,
        take_profit=take,
        target_price=Decimal(target_price) if target_price else take,
        confidence=confidence,
        strategy=strategy,
        metadata={"volatility": volatility} if volatility is not None else {},
        **extra,
    )


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def risk_config():
    """Risk configuration with the documented defaults."""
    return RiskConfig(
        max_position_size=Decimal("10000"),
        risk_percentage=2.0,
        max_drawdown=0.20,
        max_open_positions=10,
        max_correlation=0.80,
        min_confidence=0.65,
    )


@pytest.fixture
def scheduler_config():
    """Scheduler configuration with short intervals and no protective orders."""
    return SchedulerConfig(
        prediction_interval_seconds=300,
        execution_interval_seconds=60,
        entry_order_type="market",
        protective_orders=False,
    )


# =============================================================================
# Model Fixtures
# =============================================================================

@pytest.fixture
def signal_factory():
    return build_signal


@pytest.fixture
def candle_factory():
    return create_candles


@pytest.fixture
def wave_series():
    """Factory for an oscillating close series."""
    return wave_closes


@pytest.fixture
def wave_candles():
    """Factory for hourly candles over an oscillating close series."""
    def _make(count: int = 120, base: float = 100.0, amplitude: float = 8.0) -> List[Candle]:
        return create_candles(wave_closes(count, base, amplitude))
    return _make


@pytest.fixture
def sample_buy_signal():
    """BUY 100 / SL 98 / TP 105, confidence 0.8."""
    return build_signal()


@pytest.fixture
def sample_sell_signal():
    return build_signal(action=SignalAction.SELL)


@pytest.fixture
def sample_position_btc():
    """Open BTC long with protective levels."""
    return Position(
        instrument="BTC/USDT",
        side=SignalAction.BUY,
        entry_price=Decimal("100"),
        quantity=Decimal("2"),
        stop_loss=Decimal("95"),
        take_profit=Decimal("110"),
    )


@pytest.fixture
def sample_snapshot():
    """Snapshot with a full indicator bundle and 60 candles."""
    closes = wave_closes(60)
    return MarketSnapshot(
        instrument="BTC/USDT",
        price=Decimal(str(round(closes[-1], 4))),
        volume=Decimal("250"),
        volatility=0.02,
        indicators=IndicatorBundle(
            rsi=50.0,
            macd=MACD(macd=0.1, signal=0.05, histogram=0.05),
            bollinger=BollingerBands(upper=110.0, middle=100.0, lower=90.0),
            ema=EMA(ema12=100.0, ema26=100.0),
        ),
        candles=create_candles(closes),
    )


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def risk_manager(risk_config):
    """Create a fresh risk manager for each test."""
    return RiskManager(config=risk_config)


@pytest.fixture
def ledger(event_bus):
    """Ledger funded with 10,000 USDT."""
    return PortfolioLedger(initial_balances={"USDT": Decimal("10000")}, event_bus=event_bus)


@pytest.fixture
def paper_venue():
    """Seeded paper venue with BTC and ETH prices."""
    return PaperVenue(
        initial_cash=Decimal("10000"),
        seed=42,
        base_prices={"BTC/USDT": Decimal("100"), "ETH/USDT": Decimal("50")},
    )


@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def mock_exchange():
    """Mock ccxt exchange with async endpoints."""
    exchange = MagicMock()
    exchange.load_markets = AsyncMock(return_value={})
    exchange.fetch_ticker = AsyncMock(return_value={
        "symbol": "BTC/USDT",
        "last": 50000.0,
        "bid": 49990.0,
        "ask": 50010.0,
        "bidVolume": 1.5,
        "askVolume": 2.0,
        "baseVolume": 1234.5,
    })
    exchange.fetch_ohlcv = AsyncMock(return_value=[
        [1704067200000, 100.0, 101.0, 99.0, 100.5, 10.0],
        [1704070800000, 100.5, 102.0, 100.0, 101.5, 12.0],
    ])
    exchange.create_order = AsyncMock(return_value={
        "id": "ord-1",
        "status": "closed",
        "filled": 0.5,
        "average": 50000.0,
        "price": 50000.0,
    })
    exchange.cancel_order = AsyncMock(return_value={"id": "ord-1", "status": "canceled"})
    exchange.fetch_balance = AsyncMock(return_value={
        "free": {"USDT": 1000.0, "BTC": 0.1},
        "total": {"USDT": 1500.0, "BTC": 0.1},
    })
    exchange.close = AsyncMock()
    return exchange


@pytest.fixture
def mock_venue():
    """MarketVenue double with AsyncMock endpoints."""
    venue = MagicMock()
    venue.name = "mock"
    venue.fetch_snapshot = AsyncMock()
    venue.fetch_candles = AsyncMock(return_value=[])
    venue.place_order = AsyncMock()
    venue.cancel_order = AsyncMock(return_value=True)
    venue.get_account = AsyncMock()
    venue.close = AsyncMock()
    return venue


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers."""
    for item in items:
        # Add unit marker by default
        if not any(item.get_closest_marker(name) for name in ("unit", "integration")):
            item.add_marker(pytest.mark.unit)
