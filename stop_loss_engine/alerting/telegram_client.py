"""Telegram notifications for triggers, executions and lifecycle events."""

import logging
import time
from typing import Optional

import httpx

from ..config import settings

logger = logging.getLogger(__name__)


class TelegramClient:
    """Posts chat messages through the Bot API, retrying transient failures.

    Disabled (every send returns False) unless both a bot token and a chat id
    are configured.
    """

    _MAX_RETRIES = 3
    _RETRY_BACKOFF_SECONDS = [1, 2, 4]

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.bot_token = bot_token if bot_token is not None else settings.telegram_bot_token
        self.chat_id = chat_id if chat_id is not None else settings.telegram_chat_id
        self.enabled = bool(self.bot_token and self.chat_id)
        self._client = httpx.Client(
            base_url=f"https://api.telegram.org/bot{self.bot_token}",
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def _post(self, message: str, parse_mode: str) -> Optional[str]:
        """One delivery attempt. Returns an error description, or None on success."""
        try:
            response = self._client.post(
                "/sendMessage",
                json={"chat_id": self.chat_id, "text": message, "parse_mode": parse_mode},
            )
        except httpx.HTTPError as e:
            return str(e)
        if response.status_code == 200:
            return None
        return f"Telegram API error: {response.status_code} - {response.text}"

    def send_message(self, message: str, parse_mode: str = "HTML") -> bool:
        """Send ``message``, backing off 1s/2s between attempts.

        Returns:
            True if Telegram accepted the message
        """
        if not self.enabled:
            logger.debug("Telegram not configured, message dropped")
            return False

        error = None
        for attempt in range(self._MAX_RETRIES):
            error = self._post(message, parse_mode)
            if error is None:
                logger.debug("Telegram message sent")
                return True

            logger.error(f"Telegram send attempt {attempt + 1}/{self._MAX_RETRIES} failed: {error}")
            if attempt < self._MAX_RETRIES - 1:
                time.sleep(self._RETRY_BACKOFF_SECONDS[attempt])

        logger.error(f"Giving up on Telegram message after {self._MAX_RETRIES} attempts")
        return False

    def send_alert(self, alert_text: str) -> bool:
        return self.send_message(alert_text, parse_mode="HTML")
