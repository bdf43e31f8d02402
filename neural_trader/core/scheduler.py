"""Execution scheduler - drives the signal-to-execution pipeline."""
import asyncio
from collections import deque
from datetime import datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional
from zoneinfo import ZoneInfo

import structlog

from neural_trader.core.config import SchedulerConfig
from neural_trader.core.events import EventBus, EventType
from neural_trader.core.exceptions import OrderRejected, VenueUnavailable
from neural_trader.core.models import (
    CloseReason, OrderType, Position, Signal, TradingDomain, utc_now
)
from neural_trader.data.market_data import MarketDataCache
from neural_trader.exchange.base import MarketVenue
from neural_trader.portfolio.ledger import PortfolioLedger
from neural_trader.risk.risk_manager import RiskManager
from neural_trader.strategies.manager import StrategyManager

logger = structlog.get_logger(__name__)

PROTECTIVE_ORDERS_KEY = "protective_order_ids"


class SchedulerState(str, Enum):
    """Scheduler lifecycle state."""
    STOPPED = "stopped"
    RUNNING = "running"


class PeriodicTask:
    """
    Recurring coroutine with an explicit start/stop lifecycle.

    At most one invocation is in flight. A timer fire that lands while the
    previous invocation is still running is dropped and counted in
    ``skipped_ticks``.
    """

    def __init__(self, name: str, interval: float, callback: Callable[[], Awaitable[Any]]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.callback = callback

        self.run_count = 0
        self.error_count = 0
        self.skipped_ticks = 0
        self.last_run_at: Optional[datetime] = None

        self._timer: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._timer = asyncio.create_task(self._tick_loop())
        logger.debug("periodic_task.started", task=self.name, interval=self.interval)

    async def stop(self) -> None:
        """Cancel the timer and any in-flight invocation, then wait for both."""
        for task in (self._timer, self._inflight):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._timer, self._inflight):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._timer = None
        self._inflight = None
        logger.debug("periodic_task.stopped", task=self.name, runs=self.run_count)

    def fire(self) -> bool:
        """Launch one invocation unless one is already running."""
        if self.busy:
            self.skipped_ticks += 1
            logger.warning(
                "periodic_task.tick_skipped",
                task=self.name,
                skipped_ticks=self.skipped_ticks,
            )
            return False
        self._inflight = asyncio.create_task(self._invoke())
        return True

    async def run_now(self) -> bool:
        """Fire and wait for the invocation to finish."""
        if not self.fire():
            return False
        await self._inflight
        return True

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.fire()

    async def _invoke(self) -> None:
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.error_count += 1
            logger.error("periodic_task.error", task=self.name, error=str(e), exc_info=True)
        finally:
            self.run_count += 1
            self.last_run_at = utc_now()

    def get_stats(self) -> Dict[str, Any]:
        return {
            'interval': self.interval,
            'running': self.is_running,
            'runs': self.run_count,
            'errors': self.error_count,
            'skipped_ticks': self.skipped_ticks,
            'last_run_at': self.last_run_at.isoformat() if self.last_run_at else None,
        }


class MarketHours:
    """Regular trading session gate for equities."""

    def __init__(
        self,
        timezone: str = "America/New_York",
        open_time: time = time(9, 30),
        close_time: time = time(16, 0),
    ):
        self.zone = ZoneInfo(timezone)
        self.open_time = open_time
        self.close_time = close_time

    def is_open(self, now: Optional[datetime] = None) -> bool:
        local = (now or utc_now()).astimezone(self.zone)
        if local.weekday() >= 5:
            return False
        return self.open_time <= local.time() < self.close_time


class ExecutionScheduler:
    """
    Runs the prediction and execution cycles on independent timers.

    Prediction: refresh snapshots, run strategies, risk-validate and queue
    signals. Execution: mark the ledger, refresh the balance, drain the
    queue FIFO, place entries and protective orders.

    Signals are only queued while RUNNING, so nothing can be queued once
    ``stop()`` has begun.
    """

    def __init__(
        self,
        venue: MarketVenue,
        cache: MarketDataCache,
        strategy_manager: StrategyManager,
        risk_manager: RiskManager,
        ledger: PortfolioLedger,
        instruments: List[str],
        event_bus: Optional[EventBus] = None,
        domain: TradingDomain = TradingDomain.CRYPTO,
        config: Optional[SchedulerConfig] = None,
        signal_ttl_seconds: float = 300,
        market_hours: Optional[MarketHours] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.venue = venue
        self.cache = cache
        self.strategy_manager = strategy_manager
        self.risk_manager = risk_manager
        self.ledger = ledger
        self.instruments = list(instruments)
        self.event_bus = event_bus or EventBus()
        self.domain = TradingDomain(domain)
        self.config = config or SchedulerConfig()
        self.signal_ttl_seconds = signal_ttl_seconds
        self.market_hours = market_hours or MarketHours(self.config.market_timezone)
        self._clock = clock or utc_now

        self.state = SchedulerState.STOPPED
        self._queue: Deque[Signal] = deque()

        self.prediction_task = PeriodicTask(
            "prediction", self.config.prediction_interval_seconds, self.run_prediction_cycle
        )
        self.execution_task = PeriodicTask(
            "execution", self.config.execution_interval_seconds, self.run_execution_cycle
        )

        self.last_risk_adjust_at: Optional[datetime] = None
        self.last_balance: Optional[Decimal] = None
        self.signals_queued = 0
        self.signals_stale = 0
        self.orders_filled = 0
        self.orders_failed = 0

        self.event_bus.subscribe(EventType.POSITION_CLOSED, self._on_position_closed)
        self.event_bus.subscribe(EventType.TICKER, self._on_ticker)

    @property
    def queued_signals(self) -> List[Signal]:
        return list(self._queue)

    @property
    def entry_order_type(self) -> OrderType:
        if self.config.entry_order_type.lower() == "market":
            return OrderType.MARKET
        return OrderType.LIMIT

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start both cycles and run one immediate scan."""
        if self.state == SchedulerState.RUNNING:
            return

        self.state = SchedulerState.RUNNING
        self.prediction_task.start()
        self.execution_task.start()
        logger.info(
            "scheduler.started",
            domain=self.domain.value,
            instruments=self.instruments,
            strategies=self.strategy_manager.names(),
            prediction_interval=self.prediction_task.interval,
            execution_interval=self.execution_task.interval,
        )

        await self.prediction_task.run_now()

    async def stop(self) -> None:
        """Cancel both cycles, liquidate open positions and clear the queue."""
        logger.info("scheduler.stopping")

        await self.prediction_task.stop()
        await self.execution_task.stop()
        self.state = SchedulerState.STOPPED

        await self._liquidate_all()

        dropped = len(self._queue)
        self._queue.clear()
        logger.info("scheduler.stopped", dropped_signals=dropped)

    # =========================================================================
    # Prediction cycle
    # =========================================================================

    async def run_prediction_cycle(self) -> int:
        """Scan every instrument; returns the number of signals queued."""
        now = self._clock()
        if self.domain == TradingDomain.EQUITIES and not self.market_hours.is_open(now):
            logger.debug("scheduler.market_closed", at=now.isoformat())
            return 0

        queued = 0
        for instrument in self.instruments:
            try:
                snapshot = await self.cache.refresh(instrument)
                signals = await self.strategy_manager.analyze_all(snapshot)
                for signal in signals:
                    if await self._consider(signal):
                        queued += 1
            except asyncio.CancelledError:
                raise
            except VenueUnavailable as e:
                logger.warning("scheduler.venue_unavailable", instrument=instrument, error=str(e))
            except Exception as e:
                logger.error(
                    "scheduler.instrument_error",
                    instrument=instrument,
                    error=str(e),
                    exc_info=True,
                )

        await self._maybe_adjust_risk(now)
        return queued

    async def _consider(self, signal: Signal) -> bool:
        check = self.risk_manager.validate_signal(signal, self.ledger.get_open_positions())
        if not check.passed:
            return False

        for queued in self._queue:
            if queued.instrument == signal.instrument and queued.action == signal.action:
                logger.debug(
                    "scheduler.duplicate_signal",
                    instrument=signal.instrument,
                    action=signal.action.value,
                )
                return False

        return await self.enqueue(signal)

    async def enqueue(self, signal: Signal) -> bool:
        """Append a validated signal; refused unless RUNNING."""
        if self.state != SchedulerState.RUNNING:
            logger.debug("scheduler.enqueue_refused", signal_id=signal.id, state=self.state.value)
            return False

        self._queue.append(signal)
        self.signals_queued += 1
        logger.info(
            "scheduler.signal_queued",
            signal_id=signal.id,
            instrument=signal.instrument,
            action=signal.action.value,
            strategy=signal.strategy,
            confidence=signal.confidence,
            queue_size=len(self._queue),
        )
        await self.event_bus.publish(EventType.SIGNAL_GENERATED, {"signal": signal})
        return True

    async def _maybe_adjust_risk(self, now: datetime) -> None:
        if self.last_risk_adjust_at is not None:
            elapsed = (now - self.last_risk_adjust_at).total_seconds()
            if elapsed < self.config.risk_adjust_interval_seconds:
                return

        self.last_risk_adjust_at = now
        changed = self.risk_manager.adjust_risk_parameters(self.ledger.get_performance_metrics())
        if changed:
            await self.event_bus.publish(EventType.RISK_ADJUSTED, {
                "risk_per_trade": self.risk_manager.state.risk_per_trade,
                "max_open_positions": self.risk_manager.state.max_open_positions,
            })

    # =========================================================================
    # Execution cycle
    # =========================================================================

    async def run_execution_cycle(self) -> int:
        """Drain the signal queue; returns the number of entries filled."""
        price_map = self.cache.price_map()
        if price_map:
            await self.ledger.update_prices(price_map)

        balance = await self._refresh_balance(price_map)
        self.risk_manager.update_balance(balance)

        filled = 0
        now = self._clock()
        while self._queue:
            signal = self._queue.popleft()

            age = signal.age_seconds(now)
            if age > self.signal_ttl_seconds:
                self.signals_stale += 1
                logger.info(
                    "scheduler.signal_stale",
                    signal_id=signal.id,
                    instrument=signal.instrument,
                    age_seconds=round(age, 1),
                )
                continue

            try:
                if await self._execute(signal, balance):
                    filled += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.orders_failed += 1
                logger.error(
                    "scheduler.signal_error",
                    signal_id=signal.id,
                    instrument=signal.instrument,
                    error=str(e),
                    exc_info=True,
                )
                await self.event_bus.publish(EventType.ERROR, {
                    "stage": "execution",
                    "signal": signal,
                    "error": str(e),
                })

        return filled

    async def _refresh_balance(self, price_map: Dict[str, Decimal]) -> Decimal:
        try:
            account = await self.venue.get_account()
            balance = account.equity
        except VenueUnavailable as e:
            balance = self.ledger.get_total_value(price_map)
            logger.warning(
                "scheduler.balance_fallback",
                error=str(e),
                ledger_value=str(balance),
            )
        self.last_balance = balance
        return balance

    async def _execute(self, signal: Signal, balance: Decimal) -> bool:
        size = self.risk_manager.size_position(signal, balance)
        if size <= 0:
            logger.info("scheduler.zero_size", signal_id=signal.id, instrument=signal.instrument)
            return False

        order_type = self.entry_order_type
        price = signal.price if order_type == OrderType.LIMIT else None

        try:
            order = await self.venue.place_order(
                signal.instrument, order_type, signal.action, size, price
            )
        except (OrderRejected, VenueUnavailable) as e:
            self.orders_failed += 1
            logger.error(
                "scheduler.order_failed",
                signal_id=signal.id,
                instrument=signal.instrument,
                action=signal.action.value,
                quantity=str(size),
                error=str(e),
            )
            await self.event_bus.publish(EventType.ERROR, {
                "stage": "execution",
                "signal": signal,
                "error": str(e),
            })
            return False

        if not order.is_filled:
            logger.info(
                "scheduler.order_not_filled",
                order_id=order.id,
                instrument=signal.instrument,
                status=order.status.value,
            )
            await self._cancel_quietly(order.id, signal.instrument)
            return False

        position = await self.ledger.open_position(
            instrument=signal.instrument,
            side=signal.action,
            quantity=order.filled_quantity,
            entry_price=order.filled_price or signal.price,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            metadata={
                "signal_id": signal.id,
                "strategy": signal.strategy,
                "order_id": order.id,
            },
        )
        self.orders_filled += 1
        await self.event_bus.publish(EventType.ORDER_EXECUTED, {
            "order": order,
            "signal": signal,
            "position": position,
        })

        if self.config.protective_orders:
            await self._place_protective_orders(position)
        return True

    async def _place_protective_orders(self, position: Position) -> None:
        order_ids = []
        for order_type, level in (
            (OrderType.STOP, position.stop_loss),
            (OrderType.TAKE_PROFIT, position.take_profit),
        ):
            if level is None:
                continue
            try:
                order = await self.venue.place_order(
                    position.instrument,
                    order_type,
                    position.side.opposite,
                    position.quantity,
                    level,
                )
                order_ids.append(order.id)
            except (OrderRejected, VenueUnavailable) as e:
                logger.warning(
                    "scheduler.protective_order_failed",
                    position_id=position.id,
                    order_type=order_type.value,
                    level=str(level),
                    error=str(e),
                )
        position.metadata[PROTECTIVE_ORDERS_KEY] = order_ids

    async def _on_ticker(self, payload: Dict[str, Any]) -> None:
        """Mark the ledger on every streamed tick so exits fire between cycles."""
        instrument = payload["instrument"]
        if not self.ledger.find_positions(instrument):
            return
        await self.ledger.update_prices({instrument: payload["price"]})

    async def _on_position_closed(self, payload: Dict[str, Any]) -> None:
        """Cancel leftover protective orders and credit the strategy."""
        position: Position = payload["position"]
        for order_id in position.metadata.get(PROTECTIVE_ORDERS_KEY, []):
            await self._cancel_quietly(order_id, position.instrument)

        strategy = self.strategy_manager.get(position.metadata.get("strategy", ""))
        if strategy is not None and payload.get("trade") is not None:
            await strategy.on_position_closed(payload["trade"])

    async def _cancel_quietly(self, order_id: str, instrument: str) -> None:
        try:
            await self.venue.cancel_order(order_id, instrument)
        except (OrderRejected, VenueUnavailable) as e:
            logger.warning(
                "scheduler.cancel_failed",
                order_id=order_id,
                instrument=instrument,
                error=str(e),
            )

    async def _liquidate_all(self) -> None:
        for position in self.ledger.get_open_positions():
            try:
                order = await self.venue.place_order(
                    position.instrument,
                    OrderType.MARKET,
                    position.side.opposite,
                    position.quantity,
                )
                if not order.is_filled:
                    logger.warning(
                        "scheduler.liquidation_unfilled",
                        position_id=position.id,
                        status=order.status.value,
                    )
                    continue
                await self.ledger.close_position(
                    position.id, order.filled_price, CloseReason.LIQUIDATION
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "scheduler.liquidation_failed",
                    position_id=position.id,
                    instrument=position.instrument,
                    error=str(e),
                )

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        """Get current scheduler status."""
        return {
            'state': self.state.value,
            'domain': self.domain.value,
            'instruments': self.instruments,
            'queue_size': len(self._queue),
            'balance': str(self.last_balance) if self.last_balance is not None else None,
            'open_positions': len(self.ledger.get_open_positions()),
            'signals_queued': self.signals_queued,
            'signals_stale': self.signals_stale,
            'orders_filled': self.orders_filled,
            'orders_failed': self.orders_failed,
            'tasks': {
                'prediction': self.prediction_task.get_stats(),
                'execution': self.execution_task.get_stats(),
            },
            'risk': {
                'risk_per_trade': self.risk_manager.state.risk_per_trade,
                'max_open_positions': self.risk_manager.state.max_open_positions,
                'current_drawdown': self.risk_manager.state.current_drawdown,
            },
            'strategies': self.strategy_manager.get_stats(),
        }
