"""Paper trading venue.

Simulates fills locally while taking prices from a real data venue (a
public ccxt exchange) or, when none is configured, from a seeded random
walk. Cash and holdings are tracked so ``get_account`` reports a
consistent equity figure to the execution cycle.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import uuid4

import numpy as np
import structlog

from neural_trader.core.exceptions import OrderRejected
from neural_trader.core.models import (
    AccountInfo, AccountPosition, Candle, OrderResult, OrderStatus, OrderType,
    QuoteInfo, SignalAction, split_instrument, utc_now
)
from neural_trader.exchange.base import MarketVenue

logger = structlog.get_logger(__name__)

TIMEFRAME_SECONDS = {
    "1m": 60, "5m": 300, "15m": 900, "30m": 1800,
    "1h": 3600, "4h": 14400, "1d": 86400,
}


class PaperVenue(MarketVenue):
    """
    Simulated venue for paper mode.

    Fill rules:
    - MARKET orders fill immediately at the last quoted price
    - LIMIT orders priced at or through the last price fill immediately at
      the limit price; other limits rest as OPEN
    - STOP and TAKE_PROFIT orders rest as OPEN and fill at the quoted price
      once a price update crosses their level
    - BUY orders that exceed available cash are rejected
    """

    name = "paper"

    def __init__(
        self,
        initial_cash: Decimal = Decimal("10000"),
        quote_currency: str = "USDT",
        data_venue: Optional[MarketVenue] = None,
        seed: Optional[int] = None,
        base_prices: Optional[Dict[str, Decimal]] = None,
    ):
        self.quote_currency = quote_currency
        self.data_venue = data_venue
        self.cash = Decimal(str(initial_cash))
        self.holdings: Dict[str, Decimal] = {}
        self.open_orders: Dict[str, OrderResult] = {}
        self.order_history: List[OrderResult] = []

        self._last_prices: Dict[str, Decimal] = dict(base_prices or {})
        self._rng = np.random.default_rng(seed)

    def set_price(self, instrument: str, price: Decimal) -> None:
        """Override the last price of an instrument."""
        self._last_prices[instrument] = Decimal(str(price))
        self._match_resting_orders(instrument, self._last_prices[instrument])

    # =========================================================================
    # Market data
    # =========================================================================

    async def fetch_snapshot(self, instrument: str) -> QuoteInfo:
        if self.data_venue is not None:
            quote = await self.data_venue.fetch_snapshot(instrument)
            self._last_prices[instrument] = quote.price
            self._match_resting_orders(instrument, quote.price)
            return quote

        price = self._step_price(instrument)
        self._match_resting_orders(instrument, price)
        return QuoteInfo(
            instrument=instrument,
            price=price,
            volume=Decimal(str(round(float(self._rng.uniform(100, 1000)), 2))),
        )

    async def fetch_candles(
        self, instrument: str, timeframe: str = "1h", count: int = 100
    ) -> List[Candle]:
        if self.data_venue is not None:
            return await self.data_venue.fetch_candles(instrument, timeframe, count)
        return self._synthetic_candles(instrument, timeframe, count)

    def _step_price(self, instrument: str) -> Decimal:
        last = float(self._last_prices.get(instrument, Decimal("100")))
        price = max(last * (1 + float(self._rng.normal(0, 0.002))), 0.01)
        self._last_prices[instrument] = Decimal(str(round(price, 2)))
        return self._last_prices[instrument]

    def _synthetic_candles(self, instrument: str, timeframe: str, count: int) -> List[Candle]:
        """Random-walk history ending at the current price."""
        step = timedelta(seconds=TIMEFRAME_SECONDS.get(timeframe, 3600))
        last = float(self._last_prices.get(instrument, Decimal("100")))
        returns = self._rng.normal(0, 0.01, size=count)
        closes = last / np.cumprod(1 + returns[::-1])[::-1] * (1 + returns)
        start = utc_now() - step * count

        candles = []
        for i, close in enumerate(closes):
            open_ = close / (1 + returns[i])
            high = max(open_, close) * (1 + abs(float(self._rng.normal(0, 0.003))))
            low = min(open_, close) * (1 - abs(float(self._rng.normal(0, 0.003))))
            candles.append(Candle(
                timestamp=start + step * i,
                open=Decimal(str(round(float(open_), 2))),
                high=Decimal(str(round(float(high), 2))),
                low=Decimal(str(round(float(low), 2))),
                close=Decimal(str(round(float(close), 2))),
                volume=Decimal(str(round(float(self._rng.uniform(100, 1000)), 2))),
            ))
        return candles

    # =========================================================================
    # Orders
    # =========================================================================

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

        order_id = f"paper_{uuid4().hex[:12]}"

        last_price = self._last_prices.get(instrument)
        if last_price is None:
            last_price = (await self.fetch_snapshot(instrument)).price

        if order_type != OrderType.MARKET and not self._is_marketable(
            order_type, side, price, last_price
        ):
            order = OrderResult(
                id=order_id,
                instrument=instrument,
                side=side,
                order_type=order_type,
                quantity=quantity,
                price=price,
                status=OrderStatus.OPEN,
            )
            self.open_orders[order_id] = order
            self.order_history.append(order)
            logger.info(
                "paper_venue.order_resting",
                order_id=order_id,
                instrument=instrument,
                order_type=order_type.value,
                price=str(price),
            )
            return order

        fill_price = last_price if order_type == OrderType.MARKET else price
        self._apply_fill(instrument, side, quantity, fill_price)

        order = OrderResult(
            id=order_id,
            instrument=instrument,
            side=side,
            order_type=order_type,
            quantity=quantity,
            price=price,
            status=OrderStatus.FILLED,
            filled_price=fill_price,
            filled_quantity=quantity,
        )
        self.order_history.append(order)
        logger.info(
            "paper_venue.order_filled",
            order_id=order_id,
            instrument=instrument,
            side=side.value,
            quantity=str(quantity),
            price=str(fill_price),
        )
        return order

    @staticmethod
    def _is_marketable(
        order_type: OrderType, side: SignalAction, price: Decimal, last_price: Decimal
    ) -> bool:
        if order_type != OrderType.LIMIT:
            return False
        if side == SignalAction.BUY:
            return price >= last_price
        return price <= last_price

    def _match_resting_orders(self, instrument: str, price: Decimal) -> None:
        """Fill resting stop and take-profit orders whose level was crossed."""
        for order_id, order in list(self.open_orders.items()):
            if order.instrument != instrument or not self._is_triggered(order, price):
                continue

            del self.open_orders[order_id]
            try:
                self._apply_fill(instrument, order.side, order.quantity, price)
            except OrderRejected as e:
                logger.warning("paper_venue.trigger_rejected", order_id=order_id, error=str(e))
                self.order_history.append(order.model_copy(update={"status": OrderStatus.REJECTED}))
                continue

            self.order_history.append(order.model_copy(update={
                "status": OrderStatus.FILLED,
                "filled_price": price,
                "filled_quantity": order.quantity,
            }))
            logger.info(
                "paper_venue.order_triggered",
                order_id=order_id,
                instrument=instrument,
                order_type=order.order_type.value,
                price=str(price),
            )

    @staticmethod
    def _is_triggered(order: OrderResult, price: Decimal) -> bool:
        # Protective orders sit on the exit side: SELL protects a long
        if order.order_type == OrderType.STOP:
            return price <= order.price if order.side == SignalAction.SELL else price >= order.price
        if order.order_type == OrderType.TAKE_PROFIT:
            return price >= order.price if order.side == SignalAction.SELL else price <= order.price
        return False

    def _apply_fill(
        self, instrument: str, side: SignalAction, quantity: Decimal, price: Decimal
    ) -> None:
        base, _ = split_instrument(instrument)
        cost = quantity * price

        if side == SignalAction.BUY:
            if cost > self.cash:
                logger.warning(
                    "paper_venue.insufficient_funds",
                    instrument=instrument,
                    required=str(cost),
                    available=str(self.cash),
                )
                raise OrderRejected("Insufficient funds", instrument)
            self.cash -= cost
            self.holdings[base] = self.holdings.get(base, Decimal("0")) + quantity
        else:
            self.cash += cost
            self.holdings[base] = self.holdings.get(base, Decimal("0")) - quantity

        if self.holdings.get(base) == 0:
            del self.holdings[base]

    async def cancel_order(self, order_id: str, instrument: Optional[str] = None) -> bool:
        order = self.open_orders.pop(order_id, None)
        if order is None:
            return False
        logger.info("paper_venue.order_cancelled", order_id=order_id, instrument=order.instrument)
        return True

    # =========================================================================
    # Account
    # =========================================================================

    async def get_account(self) -> AccountInfo:
        positions = []
        equity = self.cash
        for asset, quantity in self.holdings.items():
            price = self._price_for_asset(asset)
            value = quantity * price if price is not None else Decimal("0")
            equity += value
            positions.append(AccountPosition(asset=asset, quantity=quantity, market_value=value))

        return AccountInfo(
            cash=self.cash,
            buying_power=max(self.cash, Decimal("0")),
            equity=equity,
            positions=positions,
        )

    def _price_for_asset(self, asset: str) -> Optional[Decimal]:
        for instrument, price in self._last_prices.items():
            if split_instrument(instrument)[0] == asset:
                return price
        return None

    async def initialize(self) -> None:
        if self.data_venue is not None:
            await self.data_venue.initialize()

    async def close(self) -> None:
        if self.data_venue is not None:
            await self.data_venue.close()
