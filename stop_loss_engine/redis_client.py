"""Redis client for event broadcast and the latest price mirror."""

import json
import logging
from typing import Any, Dict, Optional

import redis

from .config import settings

logger = logging.getLogger(__name__)


class RedisClient:
    """Publishes engine events and mirrors latest prices to Redis."""

    def __init__(self):
        self.client: Optional[redis.Redis] = None

    def connect(self):
        """Establish Redis connection."""
        try:
            client = redis.Redis(
                host=settings.redis_host,
                port=settings.redis_port,
                db=settings.redis_db,
                decode_responses=True,
            )
            # Test connection
            client.ping()
            self.client = client
            logger.info("Connected to Redis")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    def close(self):
        """Close Redis connection."""
        if self.client:
            self.client.close()
            self.client = None

    def publish_event(self, payload: Dict[str, Any]) -> bool:
        """Publish a JSON event to the broadcast channel.

        Returns:
            True if Redis accepted the message
        """
        if self.client is None:
            return False
        try:
            self.client.publish(settings.redis_events_channel, json.dumps(payload, default=str))
            return True
        except redis.RedisError as e:
            logger.warning(f"Failed to publish event to Redis: {e}")
            return False

    # ------------------------------------------------------------------
    # Latest price mirror
    # ------------------------------------------------------------------

    def set_latest_price(self, symbol: str, price: float) -> None:
        if self.client is None:
            return
        try:
            self.client.hset(settings.redis_prices_key, symbol, str(price))
        except redis.RedisError as e:
            logger.warning(f"Failed to mirror price for {symbol}: {e}")

    def get_latest_prices(self) -> Dict[str, float]:
        """Load the mirrored prices from the previous process lifetime.

        Symbols whose stored value cannot be parsed are skipped.
        """
        if self.client is None:
            return {}
        try:
            raw = self.client.hgetall(settings.redis_prices_key)
        except redis.RedisError as e:
            logger.warning(f"Failed to read latest prices from Redis: {e}")
            return {}

        prices: Dict[str, float] = {}
        for symbol, value in raw.items():
            try:
                prices[symbol] = float(value)
            except ValueError:
                logger.warning(f"Ignoring unparseable price for {symbol}: {value!r}")
        return prices
