"""ccxt-backed market venue for live crypto trading.

Wraps any ccxt async exchange behind the ``MarketVenue`` interface:
- Transient network errors are retried with exponential backoff
- Exhausted retries surface as ``VenueUnavailable``
- Exchange-side order refusals surface as ``OrderRejected``
- Every response is converted into a typed model (QuoteInfo, Candle,
  OrderResult, AccountInfo); unknown fields are dropped
"""
import asyncio
import functools
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import ccxt.async_support as ccxt
import structlog

from neural_trader.core.exceptions import OrderRejected, VenueUnavailable
from neural_trader.core.models import (
    AccountInfo, AccountPosition, Candle, OrderResult, OrderStatus, OrderType,
    QuoteInfo, SignalAction
)
from neural_trader.exchange.base import MarketVenue

logger = structlog.get_logger(__name__)


class RetryConfig:
    """Configuration for retry logic."""
    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BASE_DELAY = 1.0  # seconds
    DEFAULT_MAX_DELAY = 30.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0
    RATE_LIMIT_BASE_DELAY = 60.0
    RATE_LIMIT_MAX_DELAY = 300.0


def with_retry(
    max_retries: int = RetryConfig.DEFAULT_MAX_RETRIES,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    retryable_exceptions: tuple = (ccxt.NetworkError,),
):
    """Decorator for adding retry logic with exponential backoff.

    Rate limits back off on their own, longer schedule. When all attempts
    fail the last error is re-raised as ``VenueUnavailable``.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retryable_exceptions: Tuple of exceptions that should trigger a retry
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except ccxt.RateLimitExceeded as e:
                    last_exception = e
                    if attempt >= max_retries:
                        break
                    delay = min(
                        RetryConfig.RATE_LIMIT_BASE_DELAY * (2 ** attempt),
                        RetryConfig.RATE_LIMIT_MAX_DELAY,
                    )
                    logger.warning(
                        f"{func.__name__}.rate_limit_hit",
                        attempt=attempt + 1,
                        delay=delay,
                    )
                    await asyncio.sleep(delay)
                except retryable_exceptions as e:
                    last_exception = e
                    if attempt >= max_retries:
                        break
                    delay = min(base_delay * (exponential_base ** attempt), max_delay)
                    logger.warning(
                        f"{func.__name__}.retry_attempt",
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            logger.error(
                f"{func.__name__}.max_retries_exceeded",
                max_retries=max_retries,
                last_error=str(last_exception),
            )
            raise VenueUnavailable(str(last_exception)) from last_exception

        return wrapper
    return decorator


class CcxtVenue(MarketVenue):
    """Market venue backed by a ccxt async exchange.

    Attributes:
        exchange: ccxt exchange instance
        quote_currency: Currency used for cash and equity
        _last_prices: Last quoted price per instrument, used to mark holdings
    """

    name = "ccxt"

    ORDER_STATUS_MAP = {
        "open": OrderStatus.OPEN,
        "closed": OrderStatus.FILLED,
        "canceled": OrderStatus.CANCELLED,
        "cancelled": OrderStatus.CANCELLED,
        "rejected": OrderStatus.REJECTED,
        "expired": OrderStatus.EXPIRED,
    }

    def __init__(
        self,
        exchange_id: str = "binance",
        api_key: str = "",
        api_secret: str = "",
        sandbox: bool = True,
        timeout_ms: int = 30000,
        quote_currency: str = "USDT",
        exchange: Optional[Any] = None,
    ):
        self.exchange_id = exchange_id
        self.quote_currency = quote_currency
        self._last_prices: Dict[str, Decimal] = {}

        if exchange is not None:
            self.exchange = exchange
        else:
            exchange_class = getattr(ccxt, exchange_id, None)
            if exchange_class is None:
                raise ValueError(f"Unknown ccxt exchange '{exchange_id}'")
            self.exchange = exchange_class({
                "apiKey": api_key,
                "secret": api_secret,
                "enableRateLimit": True,
                "timeout": timeout_ms,
                "options": {"adjustForTimeDifference": True},
            })
            if sandbox and api_key:
                self.exchange.set_sandbox_mode(True)

    @with_retry()
    async def initialize(self) -> None:
        """Load market metadata."""
        await self.exchange.load_markets()
        logger.info("ccxt_venue.initialized", exchange=self.exchange_id)

    async def close(self) -> None:
        try:
            await self.exchange.close()
            logger.debug("ccxt_venue.closed", exchange=self.exchange_id)
        except Exception as e:
            logger.warning("ccxt_venue.close_error", exchange=self.exchange_id, error=str(e))

    @with_retry()
    async def fetch_snapshot(self, instrument: str) -> QuoteInfo:
        ticker = await self.exchange.fetch_ticker(instrument)
        price = Decimal(str(ticker["last"]))
        self._last_prices[instrument] = price

        bids = []
        asks = []
        if ticker.get("bid"):
            bids.append((Decimal(str(ticker["bid"])), Decimal(str(ticker.get("bidVolume") or 0))))
        if ticker.get("ask"):
            asks.append((Decimal(str(ticker["ask"])), Decimal(str(ticker.get("askVolume") or 0))))

        return QuoteInfo(
            instrument=instrument,
            price=price,
            volume=Decimal(str(ticker.get("baseVolume") or 0)),
            bids=bids,
            asks=asks,
        )

    @with_retry()
    async def fetch_candles(
        self, instrument: str, timeframe: str = "1h", count: int = 100
    ) -> List[Candle]:
        ohlcv = await self.exchange.fetch_ohlcv(instrument, timeframe, limit=count)
        # OHLCV format: [timestamp, open, high, low, close, volume]
        return [
            Candle(
                timestamp=datetime.fromtimestamp(row[0] / 1000, tz=timezone.utc),
                open=Decimal(str(row[1])),
                high=Decimal(str(row[2])),
                low=Decimal(str(row[3])),
                close=Decimal(str(row[4])),
                volume=Decimal(str(row[5] or 0)),
            )
            for row in ohlcv
        ]

    @with_retry()
    async def place_order(
        self,
        instrument: str,
        order_type: OrderType,
        side: SignalAction,
        quantity: Decimal,
        price: Optional[Decimal] = None,
    ) -> OrderResult:
        if quantity <= 0:
            raise OrderRejected("Order quantity must be positive", instrument)
        if order_type != OrderType.MARKET and price is None:
            raise OrderRejected(f"Price required for {order_type.value} orders", instrument)

        ccxt_type = "limit" if order_type == OrderType.LIMIT else "market"
        params: Dict[str, Any] = {}
        if order_type == OrderType.STOP:
            params["stopLossPrice"] = float(price)
        elif order_type == OrderType.TAKE_PROFIT:
            params["takeProfitPrice"] = float(price)

        try:
            result = await self.exchange.create_order(
                instrument,
                ccxt_type,
                side.value.lower(),
                float(quantity),
                float(price) if ccxt_type == "limit" else None,
                params,
            )
        except (ccxt.InvalidOrder, ccxt.InsufficientFunds, ccxt.PermissionDenied) as e:
            logger.error(
                "ccxt_venue.order_rejected",
                instrument=instrument,
                side=side.value,
                quantity=str(quantity),
                error=str(e),
            )
            raise OrderRejected(str(e), instrument) from e

        order = self._order_from_response(result, instrument, side, order_type, quantity, price)
        logger.info(
            "ccxt_venue.order_created",
            order_id=order.id,
            instrument=instrument,
            side=side.value,
            order_type=order_type.value,
            quantity=str(quantity),
            status=order.status.value,
        )
        return order

    @with_retry()
    async def cancel_order(self, order_id: str, instrument: Optional[str] = None) -> bool:
        try:
            await self.exchange.cancel_order(order_id, instrument)
        except ccxt.OrderNotFound:
            logger.warning("ccxt_venue.cancel_order_not_found", order_id=order_id)
            return False
        logger.info("ccxt_venue.order_cancelled", order_id=order_id, instrument=instrument)
        return True

    @with_retry()
    async def get_account(self) -> AccountInfo:
        balance = await self.exchange.fetch_balance()
        free = balance.get("free") or {}
        total = balance.get("total") or {}

        cash = Decimal(str(free.get(self.quote_currency) or 0))
        equity = Decimal(str(total.get(self.quote_currency) or 0))

        positions = []
        for asset, amount in total.items():
            if asset == self.quote_currency or not amount:
                continue
            quantity = Decimal(str(amount))
            last = self._last_prices.get(f"{asset}/{self.quote_currency}")
            value = quantity * last if last is not None else Decimal("0")
            equity += value
            positions.append(AccountPosition(asset=asset, quantity=quantity, market_value=value))

        return AccountInfo(cash=cash, buying_power=cash, equity=equity, positions=positions)

    def _order_from_response(
        self,
        result: Dict[str, Any],
        instrument: str,
        side: SignalAction,
        order_type: OrderType,
        quantity: Decimal,
        price: Optional[Decimal],
    ) -> OrderResult:
        filled = Decimal(str(result.get("filled") or 0))
        average = result.get("average") or (result.get("price") if filled else None)
        status = self._map_order_status(result.get("status"))
        if status == OrderStatus.OPEN and 0 < filled < quantity:
            status = OrderStatus.PARTIALLY_FILLED

        return OrderResult(
            id=str(result.get("id")),
            instrument=instrument,
            side=side,
            order_type=order_type,
            quantity=quantity,
            price=price,
            status=status,
            filled_price=Decimal(str(average)) if average else None,
            filled_quantity=filled,
        )

    def _map_order_status(self, status: Optional[str]) -> OrderStatus:
        """Map ccxt order status to internal OrderStatus."""
        if not status:
            return OrderStatus.PENDING
        return self.ORDER_STATUS_MAP.get(status.lower(), OrderStatus.PENDING)
