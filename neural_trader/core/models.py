"""Data models for the Neural Trader orchestrator.

This module defines the data structures that flow through the
signal-to-execution pipeline:
- Market data: candles, indicator bundles and per-instrument snapshots
- Forecasts returned by a predictor
- Signals produced by the signal generator and strategies
- Positions and closed trades owned by the portfolio ledger
- Typed venue results (orders, quotes, accounts)
- Performance and risk metric reports

All monetary values use Decimal for precision.
All timestamps are timezone-aware UTC datetime objects.
"""

import random
import string
import time
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def split_instrument(instrument: str) -> Tuple[str, str]:
    """Split an instrument id into (base, quote) assets.

    "BTC/USDT" -> ("BTC", "USDT"). Equity tickers without a quote
    ("AAPL") are quoted in USD.
    """
    if "/" in instrument:
        base, quote = instrument.split("/", 1)
        return base.upper(), quote.upper()
    return instrument.upper(), "USD"


def generate_signal_id() -> str:
    """Signal id made of generation time in ms plus a random suffix."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"sig_{int(time.time() * 1000)}_{suffix}"


# =============================================================================
# Enums
# =============================================================================

class SignalAction(str, Enum):
    """Trade direction for signals and positions."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "SignalAction":
        return SignalAction.SELL if self is SignalAction.BUY else SignalAction.BUY

    @property
    def sign(self) -> int:
        """+1 for BUY, -1 for SELL."""
        return 1 if self is SignalAction.BUY else -1


class OrderType(str, Enum):
    """Order types understood by every venue."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    TAKE_PROFIT = "take_profit"


class OrderStatus(str, Enum):
    """Order lifecycle status."""
    PENDING = "pending"           # Created but not acknowledged
    OPEN = "open"                 # Resting at the venue
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ForecastDirection(str, Enum):
    """Direction of a predictor forecast."""
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


class TradingDomain(str, Enum):
    """Market family the scheduler trades."""
    CRYPTO = "crypto"             # Continuous 24/7 trading
    EQUITIES = "equities"         # Gated on exchange hours


class CloseReason(str, Enum):
    """Why a position was closed."""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    MANUAL = "manual"
    LIQUIDATION = "liquidation"   # Forced close on shutdown


# =============================================================================
# Market Data Models
# =============================================================================

class Candle(BaseModel):
    """Single OHLCV bar.

    Attributes:
        timestamp: Bar open time (UTC)
        open: Opening price
        high: Highest price
        low: Lowest price
        close: Closing price
        volume: Traded volume
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    timestamp: datetime = Field(..., description="Bar open time (UTC)")
    open: Decimal = Field(..., description="Opening price")
    high: Decimal = Field(..., description="Highest price")
    low: Decimal = Field(..., description="Lowest price")
    close: Decimal = Field(..., description="Closing price")
    volume: Decimal = Field(default=Decimal("0"), ge=0, description="Traded volume")

    @field_validator("low")
    @classmethod
    def low_lte_high(cls, v: Decimal, info) -> Decimal:
        """Validate low is <= high."""
        if info.data.get("high") is not None and v > info.data["high"]:
            raise ValueError("Low must be <= high")
        return v


class MACD(BaseModel):
    """MACD line, signal line and histogram."""
    macd: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0


class BollingerBands(BaseModel):
    """Bollinger band levels."""
    upper: float
    middle: float
    lower: float


class EMA(BaseModel):
    """Fast and slow exponential moving averages."""
    ema12: float
    ema26: float


class IndicatorBundle(BaseModel):
    """Technical indicators computed from the candle window."""
    rsi: float = Field(default=50.0, ge=0.0, le=100.0, description="RSI(14)")
    macd: MACD = Field(default_factory=MACD, description="MACD(12, 26, 9)")
    bollinger: Optional[BollingerBands] = Field(default=None, description="Bollinger(20, 2)")
    ema: Optional[EMA] = Field(default=None, description="EMA 12/26")


class MarketSnapshot(BaseModel):
    """Latest market state for one instrument.

    One snapshot exists per instrument inside the market data cache and is
    mutated in place on every update.

    Attributes:
        instrument: Instrument id (e.g. "BTC/USDT", "AAPL")
        price: Last traded price
        volume: Recent traded volume
        volatility: Std-dev of recent close-to-close returns
        timestamp: Time of the last update
        indicators: Indicator bundle (None until enough history exists)
        candles: Bounded candle history, oldest first
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    instrument: str = Field(..., description="Instrument id")
    price: Decimal = Field(..., gt=0, description="Last price")
    volume: Decimal = Field(default=Decimal("0"), ge=0, description="Recent volume")
    volatility: float = Field(default=0.0, ge=0.0, description="Return volatility")
    timestamp: datetime = Field(default_factory=utc_now, description="Last update")
    indicators: Optional[IndicatorBundle] = Field(default=None, description="Indicators")
    candles: List[Candle] = Field(default_factory=list, description="Candle history")

    @property
    def closes(self) -> List[float]:
        """Close prices of the candle window as floats."""
        return [float(c.close) for c in self.candles]


class Forecast(BaseModel):
    """Probabilistic directional forecast from a predictor.

    Attributes:
        confidence: Probability of the winning class
        direction: up / down / neutral
        predicted_price: Price target implied by the forecast
        timeframe: Forecast horizon
        probabilities: Class probabilities keyed buy / hold / sell
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    confidence: float = Field(..., ge=0.0, le=1.0, description="Max class probability")
    direction: ForecastDirection = Field(..., description="Forecast direction")
    predicted_price: Decimal = Field(..., gt=0, description="Predicted price")
    timeframe: str = Field(default="1h", description="Forecast horizon")
    probabilities: Dict[str, float] = Field(default_factory=dict, description="buy/hold/sell")


# =============================================================================
# Signal Models
# =============================================================================

class Signal(BaseModel):
    """Trade recommendation produced by the signal generator or a strategy.

    Signals are immutable. The execution scheduler consumes each one exactly
    once, or discards it when it goes stale or fails risk validation.

    Attributes:
        instrument: Instrument id
        action: BUY or SELL
        price: Price at generation time
        target_price: Expected price target
        stop_loss: Protective stop level
        take_profit: Profit-taking level
        confidence: Confidence 0.0-1.0
        timeframe: Signal horizon
        strategy: Name of the producing strategy
        id: Unique id (generation time + random suffix)
        created_at: Generation time (UTC)
        metadata: price_change, volume, volatility, rsi, macd
    """
    model_config = ConfigDict(frozen=True, json_encoders={Decimal: str})

    instrument: str = Field(..., description="Instrument id")
    action: SignalAction = Field(..., description="Trade direction")
    price: Decimal = Field(..., gt=0, description="Price at generation")
    target_price: Decimal = Field(..., gt=0, description="Price target")
    stop_loss: Decimal = Field(..., gt=0, description="Stop loss level")
    take_profit: Decimal = Field(..., gt=0, description="Take profit level")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Confidence 0-1")
    timeframe: str = Field(default="1h", description="Signal horizon")
    strategy: str = Field(default="neural", description="Producing strategy")
    id: str = Field(default_factory=generate_signal_id, description="Signal id")
    created_at: datetime = Field(default_factory=utc_now, description="Generation time")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Signal context")

    @model_validator(mode="after")
    def check_protective_levels(self) -> "Signal":
        """Stops sit against the trade, targets in favour of it."""
        if self.action == SignalAction.BUY:
            if not self.stop_loss < self.price < self.take_profit:
                raise ValueError("BUY signal requires stop_loss < price < take_profit")
        else:
            if not self.take_profit < self.price < self.stop_loss:
                raise ValueError("SELL signal requires take_profit < price < stop_loss")
        return self

    @property
    def volatility(self) -> float:
        """Volatility recorded at generation (0.1 when unknown)."""
        value = self.metadata.get("volatility")
        return 0.1 if value is None else float(value)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds elapsed since the signal was generated."""
        return ((now or utc_now()) - self.created_at).total_seconds()


# =============================================================================
# Position Models
# =============================================================================

class Position(BaseModel):
    """Open position tracked by the portfolio ledger.

    Identity, side, entry price and quantity are fixed at creation; only the
    mark-to-market fields change on price ticks.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    instrument: str = Field(..., frozen=True, description="Instrument id")
    side: SignalAction = Field(..., frozen=True, description="Position side")
    entry_price: Decimal = Field(..., gt=0, frozen=True, description="Entry price")
    quantity: Decimal = Field(..., gt=0, frozen=True, description="Position size")
    id: str = Field(default_factory=lambda: str(uuid4()), frozen=True, description="Position id")

    current_price: Optional[Decimal] = Field(default=None, description="Last marked price")
    unrealized_pnl: Decimal = Field(default=Decimal("0"), description="Unrealized PnL")
    stop_loss: Optional[Decimal] = Field(default=None, description="Stop loss level")
    take_profit: Optional[Decimal] = Field(default=None, description="Take profit level")
    opened_at: datetime = Field(default_factory=utc_now, description="Open time")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional data")

    @property
    def notional(self) -> Decimal:
        """Position value at entry price."""
        return self.entry_price * self.quantity

    def calculate_pnl(self, price: Decimal) -> Decimal:
        """PnL of the whole position if closed at ``price``."""
        return (price - self.entry_price) * self.quantity * self.side.sign

    def mark(self, price: Decimal) -> None:
        """Update current price and unrealized PnL."""
        self.current_price = price
        self.unrealized_pnl = self.calculate_pnl(price)

    def exit_trigger(self, price: Decimal) -> Optional[CloseReason]:
        """Return the protective exit crossed at ``price``, if any."""
        if self.side == SignalAction.BUY:
            if self.stop_loss is not None and price <= self.stop_loss:
                return CloseReason.STOP_LOSS
            if self.take_profit is not None and price >= self.take_profit:
                return CloseReason.TAKE_PROFIT
        else:
            if self.stop_loss is not None and price >= self.stop_loss:
                return CloseReason.STOP_LOSS
            if self.take_profit is not None and price <= self.take_profit:
                return CloseReason.TAKE_PROFIT
        return None


class ClosedTrade(BaseModel):
    """Completed trade record appended to the performance history."""
    model_config = ConfigDict(frozen=True, json_encoders={Decimal: str})

    position_id: str = Field(..., description="Closed position id")
    instrument: str = Field(..., description="Instrument id")
    side: SignalAction = Field(..., description="Entry side")
    entry_price: Decimal = Field(..., gt=0, description="Entry price")
    exit_price: Decimal = Field(..., gt=0, description="Exit price")
    quantity: Decimal = Field(..., gt=0, description="Trade size")
    realized_pnl: Decimal = Field(..., description="Realized PnL")
    opened_at: Optional[datetime] = Field(default=None, description="Open time")
    closed_at: datetime = Field(default_factory=utc_now, description="Close time")
    reason: CloseReason = Field(default=CloseReason.MANUAL, description="Close reason")

    @property
    def return_pct(self) -> float:
        """Realized PnL relative to the entry notional."""
        notional = self.entry_price * self.quantity
        if notional == 0:
            return 0.0
        return float(self.realized_pnl / notional)

    @property
    def is_win(self) -> bool:
        return self.realized_pnl > 0


# =============================================================================
# Venue Result Models
# =============================================================================

class OrderResult(BaseModel):
    """Typed result of a venue order operation.

    Attributes:
        id: Venue order id
        instrument: Instrument id
        side: BUY or SELL
        order_type: Order type
        quantity: Requested quantity
        price: Requested price (None for market orders)
        status: Order status
        filled_price: Average fill price (None until filled)
        filled_quantity: Filled quantity
        timestamp: Venue acknowledgement time
    """
    model_config = ConfigDict(json_encoders={Decimal: str}, extra="ignore")

    id: str = Field(..., description="Venue order id")
    instrument: str = Field(..., description="Instrument id")
    side: SignalAction = Field(..., description="Order side")
    order_type: OrderType = Field(..., description="Order type")
    quantity: Decimal = Field(..., gt=0, description="Requested quantity")
    price: Optional[Decimal] = Field(default=None, description="Requested price")
    status: OrderStatus = Field(default=OrderStatus.PENDING, description="Order status")
    filled_price: Optional[Decimal] = Field(default=None, description="Average fill price")
    filled_quantity: Decimal = Field(default=Decimal("0"), ge=0, description="Filled quantity")
    timestamp: datetime = Field(default_factory=utc_now, description="Ack time")

    @property
    def is_filled(self) -> bool:
        """True if any quantity was executed."""
        return (
            self.status in (OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED)
            and self.filled_quantity > 0
        )


class QuoteInfo(BaseModel):
    """Top-of-book quote returned by ``fetch_snapshot``."""
    model_config = ConfigDict(json_encoders={Decimal: str}, extra="ignore")

    instrument: str
    price: Decimal = Field(..., gt=0)
    volume: Decimal = Field(default=Decimal("0"), ge=0)
    bids: List[Tuple[Decimal, Decimal]] = Field(default_factory=list)
    asks: List[Tuple[Decimal, Decimal]] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)


class AccountPosition(BaseModel):
    """Holding reported by the venue account."""
    model_config = ConfigDict(json_encoders={Decimal: str}, extra="ignore")

    asset: str
    quantity: Decimal
    market_value: Decimal = Decimal("0")


class AccountInfo(BaseModel):
    """Account summary returned by ``get_account``."""
    model_config = ConfigDict(json_encoders={Decimal: str}, extra="ignore")

    cash: Decimal = Field(..., description="Free quote currency")
    buying_power: Decimal = Field(..., description="Capital available for new orders")
    equity: Decimal = Field(..., description="Cash plus marked holdings")
    positions: List[AccountPosition] = Field(default_factory=list)


# =============================================================================
# Metrics Models
# =============================================================================

class PerformanceMetrics(BaseModel):
    """Trade-history statistics; every field is zero for an empty history."""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    average_pnl: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    profit_factor: float = 0.0
    expectancy: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    value_at_risk: float = 0.0
    equity_curve: List[float] = Field(default_factory=list)


class RiskMetrics(BaseModel):
    """Point-in-time risk report."""
    current_drawdown: float = 0.0
    peak_balance: float = 0.0
    exposure: float = 0.0
    exposure_ratio: float = 0.0
    open_positions: int = 0
    risk_per_trade: float = 0.0
    max_open_positions: int = 0
    value_at_risk: float = 0.0
    sharpe_ratio: float = 0.0
