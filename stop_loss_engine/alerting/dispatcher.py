"""Event dispatcher: the single broadcast sink for engine events."""

import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from ..models import Event, EventType
from ..redis_client import RedisClient
from .telegram_client import TelegramClient

logger = logging.getLogger(__name__)

# Events important enough to reach a phone, not just the dashboard.
_TELEGRAM_EVENTS = {
    EventType.STOP_LOSS_TRIGGERED,
    EventType.ORDER_UPDATE,
    EventType.SYSTEM,
}


class EventDispatcher:
    """Broadcasts events to Redis pub/sub and, for urgent kinds, to Telegram.

    The engine never addresses individual subscribers. Delivery failures are
    logged and swallowed so a broken sink can never stop a trigger or a
    recompute.
    """

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        telegram_client: Optional[TelegramClient] = None,
        history_size: int = 200,
    ):
        self.redis = redis_client
        self.telegram = telegram_client
        self._recent: Deque[Event] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def emit(self, event: Event) -> Event:
        # Ticks would flush the history within seconds
        if event.type != EventType.PRICE_UPDATE:
            with self._lock:
                self._recent.append(event)

        if self.redis is not None:
            self.redis.publish_event(event.to_dict())

        if self.telegram is not None and event.type in _TELEGRAM_EVENTS:
            try:
                self.telegram.send_alert(event.format_message())
            except Exception as e:
                logger.error(f"Failed to forward {event.type.value} event to Telegram: {e}")

        if event.type != EventType.PRICE_UPDATE:
            logger.debug(f"Event {event.type.value}: {event.message}")
        return event

    def recent(self, event_type: Optional[EventType] = None) -> List[Event]:
        """Recently emitted events other than price updates, oldest first."""
        with self._lock:
            events = list(self._recent)
        if event_type is None:
            return events
        return [e for e in events if e.type == event_type]

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def price_update(self, symbol: str, price: float) -> Event:
        return self.emit(Event(
            type=EventType.PRICE_UPDATE,
            title="Price Update",
            message=f"{symbol} {price}",
            data={"symbol": symbol, "price": price},
        ))

    def stop_loss_triggered(self, symbol: str, price: float, stop_loss_price: float) -> Event:
        return self.emit(Event(
            type=EventType.STOP_LOSS_TRIGGERED,
            title="Stop Loss Triggered",
            message=f"{symbol} stop loss triggered at {price} (stop: {stop_loss_price})",
            data={"symbol": symbol, "price": price, "stopLossPrice": stop_loss_price},
        ))

    def order_update(self, order_id: str, status: str, data: Optional[Dict[str, Any]] = None) -> Event:
        return self.emit(Event(
            type=EventType.ORDER_UPDATE,
            title="Order Update",
            message=f"Order {order_id} status: {status}",
            data={"orderId": order_id, "status": status, **(data or {})},
        ))

    def strategy_alert(self, message: str, data: Dict[str, Any]) -> Event:
        return self.emit(Event(
            type=EventType.STRATEGY_ALERT,
            title="Strategy Alert",
            message=f"{data.get('strategy')} on {data.get('symbol')}: {message}",
            data=dict(data),
        ))

    def system(self, title: str, message: str, data: Optional[Dict[str, Any]] = None) -> Event:
        return self.emit(Event(
            type=EventType.SYSTEM,
            title=title,
            message=message,
            data=data or {},
        ))
