"""Publish/subscribe event bus connecting scheduler, ledger and observers."""
import asyncio
import inspect
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union

import structlog

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class EventType(str, Enum):
    """Events emitted by the core pipeline."""
    SIGNAL_GENERATED = "signal-generated"
    ORDER_EXECUTED = "order-executed"
    POSITION_OPENED = "position-open"
    POSITION_UPDATED = "position-update"
    POSITION_CLOSED = "position-close"
    TRADE_RECORDED = "trade-recorded"
    MARKET_UPDATE = "market-update"
    TICKER = "ticker"
    RISK_ADJUSTED = "risk-adjusted"
    ERROR = "error"


class EventBus:
    """
    Explicit observer registry with ordered dispatch.

    Handlers may be plain callables or coroutine functions. A failing handler
    is logged and never propagates into the publisher, so an observer cannot
    roll back or abort the state change that produced the event.
    """

    def __init__(self):
        self._handlers: Dict[EventType, List[EventHandler]] = defaultdict(list)
        self.published_count = 0

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Register ``handler`` for ``event_type``."""
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> bool:
        """Remove a handler; returns False if it was not registered."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def handler_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(event_type, []))

    async def publish(self, event_type: EventType, payload: Dict[str, Any]) -> None:
        """Dispatch ``payload`` to every handler of ``event_type`` in order."""
        self.published_count += 1
        for handler in list(self._handlers.get(event_type, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "event_bus.handler_error",
                    event_type=event_type.value,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                    exc_info=True,
                )
