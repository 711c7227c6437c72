"""Live ticker feed from the Binance futures websocket."""

import json
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect

from .config import settings
from .models import Tick

logger = logging.getLogger(__name__)


class PriceStream:
    """Subscribes to ``<symbol>@ticker`` for each symbol on one combined stream.

    ``run`` blocks, calling ``on_tick`` for every price update, and reconnects
    after ``reconnect_delay`` seconds whenever the connection drops.
    ``add_symbols`` and ``stop`` may be called from any thread; adding a symbol
    closes the current connection and reconnects at once with the wider URL.
    """

    def __init__(
        self,
        symbols: Iterable[str],
        on_tick: Callable[[Tick], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        url: Optional[str] = None,
        reconnect_delay: Optional[float] = None,
    ):
        self._symbols = {s.upper() for s in symbols}
        self._symbols_lock = threading.Lock()
        self.on_tick = on_tick
        self.on_error = on_error
        self.base_url = url or settings.price_stream_url
        self.reconnect_delay = reconnect_delay if reconnect_delay is not None else settings.reconnect_delay_seconds
        self._stop_event = threading.Event()
        self._wakeup = threading.Event()
        self._ws = None

    @property
    def symbols(self) -> List[str]:
        with self._symbols_lock:
            return sorted(self._symbols)

    def add_symbols(self, symbols: Iterable[str]) -> List[str]:
        """Subscribe further symbols. Returns the ones that were not watched yet."""
        with self._symbols_lock:
            added = sorted({s.upper() for s in symbols} - self._symbols)
            self._symbols.update(added)
        if not added:
            return []

        logger.info(f"Subscribing price stream to {', '.join(added)}")
        self._wakeup.set()
        ws = self._ws
        if ws is not None:
            ws.close()
        return added

    @property
    def stream_url(self) -> str:
        streams = "/".join(f"{s.lower()}@ticker" for s in self.symbols)
        return f"{self.base_url}?streams={streams}"

    @staticmethod
    def parse_message(raw) -> Optional[Tick]:
        """Turn a ticker payload (combined or raw stream) into a Tick."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-JSON stream message: {raw!r:.100}")
            return None

        data = message.get("data", message) if isinstance(message, dict) else None
        if not isinstance(data, dict) or "c" not in data or "s" not in data:
            return None

        try:
            price = float(data["c"])
        except (TypeError, ValueError):
            return None

        timestamp = (
            datetime.fromtimestamp(data["E"] / 1000, tz=timezone.utc)
            if isinstance(data.get("E"), (int, float))
            else datetime.now(timezone.utc)
        )
        return Tick(symbol=data["s"].upper(), price=price, timestamp=timestamp)

    def run(self) -> None:
        while not self._stop_event.is_set():
            if not self.symbols:
                logger.info("No symbols to watch yet, price stream waiting for a subscription")
                self._wakeup.wait()
                self._wakeup.clear()
                continue

            self._wakeup.clear()
            try:
                with connect(self.stream_url, open_timeout=settings.http_timeout_seconds) as ws:
                    self._ws = ws
                    logger.info(f"Price stream connected: {', '.join(self.symbols)}")
                    # A symbol added while connecting is picked up on the next connection
                    if not self._wakeup.is_set():
                        for raw in ws:
                            if self._stop_event.is_set():
                                break
                            tick = self.parse_message(raw)
                            if tick is not None:
                                self.on_tick(tick)
            except (OSError, WebSocketException) as e:
                logger.error(f"Price stream error: {e}")
                if self.on_error is not None:
                    self.on_error(e)
            finally:
                self._ws = None

            if self._stop_event.is_set():
                break
            if self._wakeup.is_set():
                logger.info("Price stream resubscribing with new symbols")
                continue
            logger.info(f"Price stream closed, reconnecting in {self.reconnect_delay}s...")
            self._wakeup.wait(self.reconnect_delay)

        logger.info("Price stream stopped")

    def stop(self) -> None:
        self._stop_event.set()
        self._wakeup.set()
        ws = self._ws
        if ws is not None:
            ws.close()
