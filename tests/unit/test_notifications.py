"""Unit tests for the notification service."""
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import aiohttp

from neural_trader.core.config import NotificationConfig
from neural_trader.core.events import EventType
from neural_trader.core.models import (
    ClosedTrade, CloseReason, OrderResult, OrderStatus, OrderType, SignalAction
)
from neural_trader.notifications.service import NotificationService


@pytest.fixture
def telegram_config():
    return NotificationConfig(telegram_bot_token="123:abc", telegram_chat_id="42")


@pytest.fixture
def mock_session():
    """aiohttp session double whose post() is an async context manager."""
    session = MagicMock()
    session.closed = False
    response = MagicMock()
    response.status = 200
    session.post.return_value.__aenter__ = AsyncMock(return_value=response)
    session.post.return_value.__aexit__ = AsyncMock(return_value=False)
    session.close = AsyncMock()
    return session


# =============================================================================
# Delivery Tests
# =============================================================================

class TestTelegramDelivery:
    """Test Bot API posting."""

    @pytest.mark.asyncio
    async def test_send_posts_message(self, telegram_config, mock_session):
        service = NotificationService(telegram_config, session=mock_session)

        assert await service.send_telegram("hello") is True

        mock_session.post.assert_called_once_with(
            "https://api.telegram.org/bot123:abc/sendMessage",
            json={"chat_id": "42", "text": "hello"},
        )
        assert service.messages_sent == 1

    @pytest.mark.asyncio
    async def test_non_200_counts_as_failure(self, telegram_config, mock_session):
        mock_session.post.return_value.__aenter__.return_value.status = 429
        service = NotificationService(telegram_config, session=mock_session)

        assert await service.send_telegram("hello") is False
        assert service.messages_failed == 1

    @pytest.mark.asyncio
    async def test_client_error_is_caught(self, telegram_config, mock_session):
        mock_session.post.side_effect = aiohttp.ClientConnectionError("refused")
        service = NotificationService(telegram_config, session=mock_session)

        assert await service.send_telegram("hello") is False
        assert service.messages_failed == 1

    @pytest.mark.asyncio
    async def test_disabled_without_credentials(self, mock_session):
        service = NotificationService(NotificationConfig(), session=mock_session)

        assert service.telegram_enabled is False
        assert await service.send_telegram("hello") is False
        mock_session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_keeps_injected_session(self, telegram_config, mock_session):
        service = NotificationService(telegram_config, session=mock_session)
        await service.close()
        mock_session.close.assert_not_awaited()


# =============================================================================
# Event Handler Tests
# =============================================================================

class TestEventHandlers:
    """Test event bus integration."""

    @pytest.mark.asyncio
    async def test_signal_event_sends_message(
        self, telegram_config, mock_session, event_bus, sample_buy_signal
    ):
        service = NotificationService(telegram_config, event_bus, session=mock_session)

        await event_bus.publish(EventType.SIGNAL_GENERATED, {"signal": sample_buy_signal})
        await service.close()

        text = mock_session.post.call_args.kwargs["json"]["text"]
        assert "BUY" in text
        assert "BTC/USDT" in text
        assert service.messages_sent == 1

    @pytest.mark.asyncio
    async def test_order_and_close_events(self, telegram_config, mock_session, event_bus):
        service = NotificationService(telegram_config, event_bus, session=mock_session)
        order = OrderResult(
            id="o-1", instrument="BTC/USDT", side=SignalAction.BUY,
            order_type=OrderType.MARKET, quantity=Decimal("2"),
            status=OrderStatus.FILLED, filled_price=Decimal("100"),
            filled_quantity=Decimal("2"),
        )
        trade = ClosedTrade(
            position_id="p-1", instrument="BTC/USDT", side=SignalAction.BUY,
            entry_price=Decimal("100"), exit_price=Decimal("95"),
            quantity=Decimal("2"), realized_pnl=Decimal("-10"),
            reason=CloseReason.STOP_LOSS,
        )

        await event_bus.publish(EventType.ORDER_EXECUTED, {"order": order})
        await event_bus.publish(EventType.POSITION_CLOSED, {"position": None, "trade": trade})
        await service.close()

        texts = [c.kwargs["json"]["text"] for c in mock_session.post.call_args_list]
        assert len(texts) == 2
        assert "stop_loss" in texts[1]
        assert "-10.00" in texts[1]

    @pytest.mark.asyncio
    async def test_disabled_trigger_skips_send(self, mock_session, event_bus):
        config = NotificationConfig(
            telegram_bot_token="123:abc", telegram_chat_id="42", notify_on_error=False
        )
        service = NotificationService(config, event_bus, session=mock_session)

        await event_bus.publish(EventType.ERROR, {"stage": "execution", "error": "rejected"})
        await service.close()

        mock_session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self, event_bus):
        service = NotificationService(NotificationConfig(), event_bus)
        assert event_bus.handler_count(EventType.ERROR) == 1

        await service.close()

        assert event_bus.handler_count(EventType.ERROR) == 0
