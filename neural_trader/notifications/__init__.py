"""Operator notifications."""

from neural_trader.notifications.service import NotificationService

__all__ = ["NotificationService"]
