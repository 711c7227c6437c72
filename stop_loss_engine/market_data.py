"""Latest prices and candle windows."""

import logging
import threading
import time
from typing import Dict, List, Optional, Tuple

import httpx

from .analysis import resistance_levels, support_levels
from .config import settings
from .exceptions import UpstreamError, ValidationError
from .models import Candle, TIMEFRAME_SECONDS
from .redis_client import RedisClient

logger = logging.getLogger(__name__)


class MarketDataCache:
    """Holds the latest observed price per symbol and fetches candles on demand.

    Prices are written by the tick feed thread and read by the sweep and
    execution threads, so the map is guarded by a lock. When a Redis client is
    given, prices are mirrored there (best effort) so a restart can seed them.
    """

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.redis = redis_client
        self._prices: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._window_cache: Dict[Tuple[str, str], Tuple[float, List[Candle]]] = {}
        self._client = httpx.Client(
            base_url=(base_url or settings.market_data_base_url).rstrip("/"),
            timeout=timeout or settings.http_timeout_seconds,
            transport=transport,
        )

    def close(self):
        self._client.close()

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    def update_price(self, symbol: str, price: float) -> None:
        with self._lock:
            self._prices[symbol] = price
        if self.redis is not None:
            self.redis.set_latest_price(symbol, price)

    def get_price(self, symbol: str) -> Optional[float]:
        with self._lock:
            return self._prices.get(symbol)

    def get_all_prices(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._prices)

    def seed_prices(self, prices: Dict[str, float]) -> None:
        """Fill in prices for symbols that have not ticked yet."""
        with self._lock:
            for symbol, price in prices.items():
                self._prices.setdefault(symbol, price)

    # ------------------------------------------------------------------
    # Candles
    # ------------------------------------------------------------------

    def fetch_candles(self, symbol: str, interval: str = "1h", limit: int = 1000) -> List[Candle]:
        """Fetch the most recent ``limit`` candles, oldest first."""
        if interval not in TIMEFRAME_SECONDS:
            raise ValidationError(f"Unsupported timeframe: {interval}")

        params = {"symbol": symbol.upper(), "interval": interval, "limit": limit}
        try:
            response = self._client.get("/fapi/v1/klines", params=params)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Candle request for {symbol} {interval} failed: {e}") from e

        if response.status_code >= 400:
            raise UpstreamError(
                f"Candle request for {symbol} {interval} rejected",
                status=response.status_code,
                body=response.text,
            )

        try:
            candles = [Candle.from_kline(row) for row in response.json()]
        except (ValueError, TypeError, IndexError) as e:
            raise UpstreamError(
                f"Malformed candle payload for {symbol} {interval}: {e}",
                status=response.status_code,
                body=response.text,
            ) from e

        logger.debug(f"Fetched {len(candles)} {interval} candles for {symbol}")
        return candles

    def support_resistance(self, symbol: str, timeframe: str = "4h", last_n: int = 10) -> Dict[str, List[float]]:
        """Nearest supports below and resistances above the latest price.

        Candle windows are cached per (symbol, timeframe) for
        ``levels_cache_seconds``.
        """
        key = (symbol, timeframe)
        cached = self._window_cache.get(key)
        if cached and time.monotonic() - cached[0] < settings.levels_cache_seconds:
            candles = cached[1]
        else:
            candles = self.fetch_candles(symbol, timeframe, settings.candle_limit)
            self._window_cache[key] = (time.monotonic(), candles)

        current_price = self.get_price(symbol)
        if current_price is None:
            current_price = candles[-1].close if candles else 0.0

        return {
            "supports": support_levels(candles, current_price, last_n),
            "resistances": resistance_levels(candles, current_price, last_n),
        }
