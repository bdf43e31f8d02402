"""Portfolio ledger: balances, open positions and closed-trade history.

The ledger is the only owner of portfolio state. Every mutation goes
through its methods so the balance invariants hold:
- Opening a BUY debits the quote asset and credits the base asset
- Opening a SELL does the opposite
- Closing reverses the entry at the exit price, so the net quote change
  equals the realized PnL
"""
from collections import deque
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional

import structlog

from neural_trader.core.events import EventBus, EventType
from neural_trader.core.exceptions import PositionNotFound
from neural_trader.core.models import (
    ClosedTrade, CloseReason, PerformanceMetrics, Position, SignalAction,
    split_instrument, utc_now
)
from neural_trader.portfolio.performance import PerformanceAggregator

logger = structlog.get_logger(__name__)


class PortfolioLedger:
    """
    Tracks per-asset balances, open positions and a bounded trade history.

    Attributes:
        event_bus: Receives POSITION_OPENED, POSITION_UPDATED,
            POSITION_CLOSED and TRADE_RECORDED events
        history_limit: Maximum number of closed trades kept in memory
    """

    def __init__(
        self,
        initial_balances: Optional[Dict[str, Decimal]] = None,
        event_bus: Optional[EventBus] = None,
        history_limit: int = 1000,
        baseline_equity: float = 10000.0,
    ):
        self.event_bus = event_bus
        self.history_limit = history_limit
        self.aggregator = PerformanceAggregator(baseline_equity)

        self._balances: Dict[str, Decimal] = {
            asset: Decimal(str(amount)) for asset, amount in (initial_balances or {}).items()
        }
        self._positions: Dict[str, Position] = {}
        self._history: Deque[ClosedTrade] = deque(maxlen=history_limit)

    # =========================================================================
    # Balances
    # =========================================================================

    def get_balance(self, asset: str) -> Decimal:
        return self._balances.get(asset.upper(), Decimal("0"))

    def get_balances(self) -> Dict[str, Decimal]:
        return dict(self._balances)

    def _adjust(self, asset: str, delta: Decimal) -> None:
        self._balances[asset] = self._balances.get(asset, Decimal("0")) + delta

    def get_total_value(self, price_map: Optional[Dict[str, Decimal]] = None) -> Decimal:
        """
        Quote balances plus base holdings marked to market.

        Base assets without a price in ``price_map`` are valued at the price
        of an open position in that asset, else at zero.
        """
        prices_by_base: Dict[str, Decimal] = {}
        for position in self._positions.values():
            base = split_instrument(position.instrument)[0]
            prices_by_base.setdefault(base, position.current_price or position.entry_price)
        for instrument, price in (price_map or {}).items():
            prices_by_base[split_instrument(instrument)[0]] = Decimal(str(price))

        quote_assets = {split_instrument(p.instrument)[1] for p in self._positions.values()}
        quote_assets.update({"USD", "USDT", "USDC"})

        total = Decimal("0")
        for asset, amount in self._balances.items():
            if asset in quote_assets:
                total += amount
            elif amount != 0:
                total += amount * prices_by_base.get(asset, Decimal("0"))
        return total

    # =========================================================================
    # Positions
    # =========================================================================

    async def open_position(
        self,
        instrument: str,
        side: SignalAction,
        quantity: Decimal,
        entry_price: Decimal,
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Position:
        """Register a filled entry and move balances at the entry price."""
        position = Position(
            instrument=instrument,
            side=side,
            entry_price=entry_price,
            quantity=quantity,
            current_price=entry_price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            metadata=dict(metadata or {}),
        )

        base, quote = split_instrument(instrument)
        cost = entry_price * quantity
        if side == SignalAction.BUY:
            self._adjust(quote, -cost)
            self._adjust(base, quantity)
        else:
            self._adjust(quote, cost)
            self._adjust(base, -quantity)

        self._positions[position.id] = position

        logger.info(
            "ledger.position_opened",
            position_id=position.id,
            instrument=instrument,
            side=side.value,
            quantity=str(quantity),
            entry_price=str(entry_price),
        )
        await self._publish(EventType.POSITION_OPENED, {"position": position})
        return position

    async def close_position(
        self,
        position_id: str,
        exit_price: Optional[Decimal] = None,
        reason: CloseReason = CloseReason.MANUAL,
    ) -> ClosedTrade:
        """
        Close a position, reverse its balances and record the trade.

        The exit price defaults to the last marked price, else the entry.

        Raises:
            PositionNotFound: If no open position has ``position_id``
        """
        position = self._positions.get(position_id)
        if position is None:
            raise PositionNotFound(position_id)

        price = exit_price or position.current_price or position.entry_price
        pnl = position.calculate_pnl(price)

        base, quote = split_instrument(position.instrument)
        proceeds = price * position.quantity
        if position.side == SignalAction.BUY:
            self._adjust(quote, proceeds)
            self._adjust(base, -position.quantity)
        else:
            self._adjust(quote, -proceeds)
            self._adjust(base, position.quantity)

        del self._positions[position_id]
        position.mark(price)

        trade = ClosedTrade(
            position_id=position.id,
            instrument=position.instrument,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=price,
            quantity=position.quantity,
            realized_pnl=pnl,
            opened_at=position.opened_at,
            closed_at=utc_now(),
            reason=CloseReason(reason),
        )
        self._history.append(trade)

        logger.info(
            "ledger.position_closed",
            position_id=position.id,
            instrument=position.instrument,
            side=position.side.value,
            exit_price=str(price),
            realized_pnl=str(pnl),
            reason=trade.reason.value,
        )
        await self._publish(EventType.POSITION_CLOSED, {"position": position, "trade": trade})
        await self._publish(EventType.TRADE_RECORDED, {"trade": trade})
        return trade

    async def update_prices(self, price_map: Dict[str, Decimal]) -> List[ClosedTrade]:
        """
        Mark open positions to market and fire protective exits.

        A position whose stop loss or take profit is crossed is closed
        within this call at the tick price.
        """
        closed: List[ClosedTrade] = []
        for position in list(self._positions.values()):
            price = price_map.get(position.instrument)
            if price is None:
                continue

            price = Decimal(str(price))
            position.mark(price)
            await self._publish(EventType.POSITION_UPDATED, {"position": position})

            reason = position.exit_trigger(price)
            if reason is not None:
                logger.info(
                    "ledger.exit_triggered",
                    position_id=position.id,
                    instrument=position.instrument,
                    reason=reason.value,
                    price=str(price),
                )
                closed.append(await self.close_position(position.id, price, reason))
        return closed

    def get_open_positions(self) -> List[Position]:
        return list(self._positions.values())

    def get_position(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def find_positions(self, instrument: str) -> List[Position]:
        return [p for p in self._positions.values() if p.instrument == instrument]

    # =========================================================================
    # History & metrics
    # =========================================================================

    def get_trade_history(self, limit: int = 100) -> List[ClosedTrade]:
        """Most recent closed trades, oldest first."""
        if limit <= 0:
            return []
        return list(self._history)[-limit:]

    def get_performance_metrics(self) -> PerformanceMetrics:
        return self.aggregator.compute(list(self._history))

    # =========================================================================
    # Persistence
    # =========================================================================

    def export_state(self) -> Dict[str, Any]:
        """JSON-safe snapshot of balances, positions and history."""
        return {
            "timestamp": utc_now().isoformat(),
            "balances": {asset: str(amount) for asset, amount in self._balances.items()},
            "positions": [p.model_dump(mode="json") for p in self._positions.values()],
            "history": [t.model_dump(mode="json") for t in self._history],
        }

    def import_state(self, data: Dict[str, Any]) -> None:
        """Replace the ledger contents with an ``export_state`` snapshot."""
        balances = {
            asset: Decimal(str(amount)) for asset, amount in data.get("balances", {}).items()
        }
        positions = [Position.model_validate(p) for p in data.get("positions", [])]
        history = [ClosedTrade.model_validate(t) for t in data.get("history", [])]

        self._balances = balances
        self._positions = {p.id: p for p in positions}
        self._history = deque(history, maxlen=self.history_limit)

        logger.info(
            "ledger.state_imported",
            positions=len(self._positions),
            trades=len(self._history),
        )

    async def _publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(event_type, payload)
