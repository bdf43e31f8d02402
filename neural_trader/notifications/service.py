"""Operator notifications for pipeline events.

Every subscribed event is logged. When a Telegram bot token and chat id
are configured, a short text message is also posted through the Bot API.
Delivery runs in the background and failures are only logged.
"""
import asyncio
from typing import Any, Dict, Optional, Set

import aiohttp
import structlog

from neural_trader.core.config import NotificationConfig
from neural_trader.core.events import EventBus, EventType

logger = structlog.get_logger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"


class NotificationService:
    """Event bus subscriber that reports signals, fills, closes and errors."""

    def __init__(
        self,
        config: Optional[NotificationConfig] = None,
        event_bus: Optional[EventBus] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config or NotificationConfig()
        self.event_bus = event_bus
        self._session = session
        self._owns_session = session is None
        self._pending: Set[asyncio.Task] = set()

        self.messages_sent = 0
        self.messages_failed = 0

        self._handlers = {
            EventType.SIGNAL_GENERATED: self.on_signal,
            EventType.ORDER_EXECUTED: self.on_order_executed,
            EventType.POSITION_CLOSED: self.on_position_closed,
            EventType.ERROR: self.on_error,
        }
        if event_bus is not None:
            for event_type, handler in self._handlers.items():
                event_bus.subscribe(event_type, handler)

    @property
    def telegram_enabled(self) -> bool:
        return self.config.telegram_enabled

    # =========================================================================
    # Event handlers
    # =========================================================================

    def on_signal(self, payload: Dict[str, Any]) -> None:
        signal = payload["signal"]
        logger.info(
            "notification.signal",
            instrument=signal.instrument,
            action=signal.action.value,
            price=str(signal.price),
            confidence=round(signal.confidence, 3),
            strategy=signal.strategy,
        )
        if self.config.notify_on_signal:
            self._dispatch(
                f"📊 {signal.action.value} signal {signal.instrument} @ {signal.price} "
                f"(conf {signal.confidence:.0%}, {signal.strategy})"
            )

    def on_order_executed(self, payload: Dict[str, Any]) -> None:
        order = payload["order"]
        logger.info(
            "notification.order_executed",
            order_id=order.id,
            instrument=order.instrument,
            side=order.side.value,
            quantity=str(order.filled_quantity),
            price=str(order.filled_price),
        )
        if self.config.notify_on_trade:
            self._dispatch(
                f"✅ {order.side.value} {order.filled_quantity} {order.instrument} "
                f"@ {order.filled_price}"
            )

    def on_position_closed(self, payload: Dict[str, Any]) -> None:
        trade = payload.get("trade")
        if trade is None:
            return
        logger.info(
            "notification.position_closed",
            instrument=trade.instrument,
            realized_pnl=str(trade.realized_pnl),
            reason=trade.reason.value,
        )
        if self.config.notify_on_trade:
            self._dispatch(
                f"🔒 Closed {trade.instrument} ({trade.reason.value}) "
                f"PnL {trade.realized_pnl:+.2f}"
            )

    def on_error(self, payload: Dict[str, Any]) -> None:
        logger.warning("notification.error", stage=payload.get("stage"), error=payload.get("error"))
        if self.config.notify_on_error:
            self._dispatch(f"⚠️ {payload.get('stage', 'error')}: {payload.get('error')}")

    # =========================================================================
    # Delivery
    # =========================================================================

    def _dispatch(self, text: str) -> None:
        if not self.telegram_enabled:
            return
        task = asyncio.create_task(self.send_telegram(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def send_telegram(self, text: str) -> bool:
        """Post one message; returns False on any delivery failure."""
        if not self.telegram_enabled:
            return False

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.telegram_timeout)
            )
            self._owns_session = True

        url = TELEGRAM_API_URL.format(token=self.config.telegram_bot_token)
        try:
            async with self._session.post(
                url, json={"chat_id": self.config.telegram_chat_id, "text": text}
            ) as resp:
                if resp.status != 200:
                    self.messages_failed += 1
                    logger.warning("notification.telegram_rejected", status=resp.status)
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.messages_failed += 1
            logger.warning("notification.telegram_failed", error=str(e))
            return False

        self.messages_sent += 1
        return True

    async def close(self) -> None:
        """Flush pending messages and release the HTTP session."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        if self.event_bus is not None:
            for event_type, handler in self._handlers.items():
                self.event_bus.unsubscribe(event_type, handler)
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
