"""Database storage for positions, trades and signals."""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Dict, List, Optional, Set

import structlog
from sqlalchemy import JSON, Column, DateTime, Float, Numeric, String, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from neural_trader.core.config import database_config
from neural_trader.core.events import EventBus, EventType
from neural_trader.core.models import (
    ClosedTrade, CloseReason, Position, Signal, SignalAction
)

logger = structlog.get_logger(__name__)

Base = declarative_base()


class PositionModel(Base):
    """SQLAlchemy model for open positions."""
    __tablename__ = 'positions'

    id = Column(String, primary_key=True)
    instrument = Column(String, nullable=False, index=True)
    side = Column(String, nullable=False)
    entry_price = Column(Numeric(36, 18), nullable=False)
    quantity = Column(Numeric(36, 18), nullable=False)
    current_price = Column(Numeric(36, 18), nullable=True)
    unrealized_pnl = Column(Numeric(36, 18), default=0)
    stop_loss = Column(Numeric(36, 18), nullable=True)
    take_profit = Column(Numeric(36, 18), nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=False)
    metadata_json = Column(JSON, default=dict)


class TradeModel(Base):
    """SQLAlchemy model for closed trades."""
    __tablename__ = 'trades'

    position_id = Column(String, primary_key=True)
    instrument = Column(String, nullable=False, index=True)
    side = Column(String, nullable=False)
    entry_price = Column(Numeric(36, 18), nullable=False)
    exit_price = Column(Numeric(36, 18), nullable=False)
    quantity = Column(Numeric(36, 18), nullable=False)
    realized_pnl = Column(Numeric(36, 18), nullable=False)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=False)
    reason = Column(String, nullable=False)


class SignalModel(Base):
    """SQLAlchemy model for queued signals."""
    __tablename__ = 'signals'

    id = Column(String, primary_key=True)
    instrument = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    price = Column(Numeric(36, 18), nullable=False)
    target_price = Column(Numeric(36, 18), nullable=False)
    stop_loss = Column(Numeric(36, 18), nullable=False)
    take_profit = Column(Numeric(36, 18), nullable=False)
    confidence = Column(Float, nullable=False)
    timeframe = Column(String, nullable=False)
    strategy = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    metadata_json = Column(JSON, default=dict)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Database:
    """Async database interface."""

    def __init__(self, url: Optional[str] = None):
        # Convert SQLite URL to async version if needed
        db_url = url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, echo=False)
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession)

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.initialized", url=self.url)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Position operations
    async def save_position(self, position: Position):
        """Save or update a position."""
        async with self.session_maker() as session:
            db_position = await session.get(PositionModel, position.id)

            if db_position is None:
                db_position = PositionModel(
                    id=position.id,
                    instrument=position.instrument,
                    side=position.side.value,
                    entry_price=position.entry_price,
                    quantity=position.quantity,
                    opened_at=position.opened_at,
                )
                session.add(db_position)

            db_position.current_price = position.current_price
            db_position.unrealized_pnl = position.unrealized_pnl
            db_position.stop_loss = position.stop_loss
            db_position.take_profit = position.take_profit
            db_position.metadata_json = dict(position.metadata)

            await session.commit()

    async def delete_position(self, position_id: str) -> bool:
        """Delete a position; False if it was not stored."""
        async with self.session_maker() as session:
            db_position = await session.get(PositionModel, position_id)
            if db_position is None:
                return False
            await session.delete(db_position)
            await session.commit()
            return True

    async def get_open_positions(self) -> List[Position]:
        """Get all stored positions."""
        async with self.session_maker() as session:
            result = await session.execute(
                select(PositionModel).order_by(PositionModel.opened_at)
            )
            return [self._position_from_model(p) for p in result.scalars().all()]

    async def get_position(self, position_id: str) -> Optional[Position]:
        async with self.session_maker() as session:
            db_position = await session.get(PositionModel, position_id)
            if db_position is None:
                return None
            return self._position_from_model(db_position)

    # Trade operations
    async def save_trade(self, trade: ClosedTrade):
        """Save a closed trade (idempotent per position id)."""
        async with self.session_maker() as session:
            if await session.get(TradeModel, trade.position_id) is not None:
                return
            session.add(TradeModel(
                position_id=trade.position_id,
                instrument=trade.instrument,
                side=trade.side.value,
                entry_price=trade.entry_price,
                exit_price=trade.exit_price,
                quantity=trade.quantity,
                realized_pnl=trade.realized_pnl,
                opened_at=trade.opened_at,
                closed_at=trade.closed_at,
                reason=trade.reason.value,
            ))
            await session.commit()

    async def get_trades(
        self,
        instrument: Optional[str] = None,
        limit: int = 100
    ) -> List[ClosedTrade]:
        """Most recent trades, newest first."""
        async with self.session_maker() as session:
            query = select(TradeModel).order_by(TradeModel.closed_at.desc()).limit(limit)
            if instrument:
                query = query.where(TradeModel.instrument == instrument)

            result = await session.execute(query)
            return [self._trade_from_model(t) for t in result.scalars().all()]

    # Signal operations
    async def save_signal(self, signal: Signal):
        async with self.session_maker() as session:
            if await session.get(SignalModel, signal.id) is not None:
                return
            session.add(SignalModel(
                id=signal.id,
                instrument=signal.instrument,
                action=signal.action.value,
                price=signal.price,
                target_price=signal.target_price,
                stop_loss=signal.stop_loss,
                take_profit=signal.take_profit,
                confidence=signal.confidence,
                timeframe=signal.timeframe,
                strategy=signal.strategy,
                created_at=signal.created_at,
                metadata_json=dict(signal.metadata),
            ))
            await session.commit()

    async def get_signals(
        self,
        instrument: Optional[str] = None,
        limit: int = 100
    ) -> List[Signal]:
        """Most recent signals, newest first."""
        async with self.session_maker() as session:
            query = select(SignalModel).order_by(SignalModel.created_at.desc()).limit(limit)
            if instrument:
                query = query.where(SignalModel.instrument == instrument)

            result = await session.execute(query)
            return [self._signal_from_model(s) for s in result.scalars().all()]

    # Helpers
    def _position_from_model(self, model: PositionModel) -> Position:
        """Convert DB model to Position object."""
        return Position(
            id=model.id,
            instrument=model.instrument,
            side=SignalAction(model.side),
            entry_price=Decimal(str(model.entry_price)),
            quantity=Decimal(str(model.quantity)),
            current_price=Decimal(str(model.current_price)) if model.current_price is not None else None,
            unrealized_pnl=Decimal(str(model.unrealized_pnl or 0)),
            stop_loss=Decimal(str(model.stop_loss)) if model.stop_loss is not None else None,
            take_profit=Decimal(str(model.take_profit)) if model.take_profit is not None else None,
            opened_at=_as_utc(model.opened_at),
            metadata=model.metadata_json or {}
        )

    def _trade_from_model(self, model: TradeModel) -> ClosedTrade:
        return ClosedTrade(
            position_id=model.position_id,
            instrument=model.instrument,
            side=SignalAction(model.side),
            entry_price=Decimal(str(model.entry_price)),
            exit_price=Decimal(str(model.exit_price)),
            quantity=Decimal(str(model.quantity)),
            realized_pnl=Decimal(str(model.realized_pnl)),
            opened_at=_as_utc(model.opened_at),
            closed_at=_as_utc(model.closed_at),
            reason=CloseReason(model.reason),
        )

    def _signal_from_model(self, model: SignalModel) -> Signal:
        return Signal(
            id=model.id,
            instrument=model.instrument,
            action=SignalAction(model.action),
            price=Decimal(str(model.price)),
            target_price=Decimal(str(model.target_price)),
            stop_loss=Decimal(str(model.stop_loss)),
            take_profit=Decimal(str(model.take_profit)),
            confidence=model.confidence,
            timeframe=model.timeframe,
            strategy=model.strategy,
            created_at=_as_utc(model.created_at),
            metadata=model.metadata_json or {}
        )


class PersistenceSubscriber:
    """
    Mirrors ledger and scheduler events into the database.

    Writes run as background tasks so the publisher never waits on I/O.
    They are applied one at a time in event order; a failed write is
    logged and dropped.
    """

    def __init__(self, database: Database, event_bus: EventBus):
        self.database = database
        self.event_bus = event_bus
        self.failures = 0
        self._pending: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

        self._handlers = {
            EventType.POSITION_OPENED: self._on_position_opened,
            EventType.POSITION_CLOSED: self._on_position_closed,
            EventType.TRADE_RECORDED: self._on_trade_recorded,
            EventType.SIGNAL_GENERATED: self._on_signal_generated,
        }
        for event_type, handler in self._handlers.items():
            event_bus.subscribe(event_type, handler)

    def detach(self) -> None:
        for event_type, handler in self._handlers.items():
            self.event_bus.unsubscribe(event_type, handler)

    async def drain(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, operation: str, coro: Awaitable[Any]) -> None:
        task = asyncio.create_task(self._run(operation, coro))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run(self, operation: str, coro: Awaitable[Any]) -> None:
        try:
            async with self._lock:
                await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error("persistence.write_failed", operation=operation, error=str(e))

    def _on_position_opened(self, payload: Dict[str, Any]) -> None:
        self._schedule("save_position", self.database.save_position(payload["position"]))

    def _on_position_closed(self, payload: Dict[str, Any]) -> None:
        self._schedule("delete_position", self.database.delete_position(payload["position"].id))

    def _on_trade_recorded(self, payload: Dict[str, Any]) -> None:
        self._schedule("save_trade", self.database.save_trade(payload["trade"]))

    def _on_signal_generated(self, payload: Dict[str, Any]) -> None:
        self._schedule("save_signal", self.database.save_signal(payload["signal"]))
