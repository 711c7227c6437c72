"""Alerting module for Stop Loss Engine."""

from .telegram_client import TelegramClient
from .dispatcher import EventDispatcher

__all__ = ["TelegramClient", "EventDispatcher"]
