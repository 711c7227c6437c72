"""Stop Loss Engine - wiring, lifecycle and command surface.

Two independent producers drive the engine: the live price stream (every
tick is checked against the active stop) and the strategy sweep (stops are
recomputed from candles). Both go through the same register, serialized per
symbol.
"""

import logging
from typing import Any, Dict, List, Optional

from .alerting.dispatcher import EventDispatcher
from .alerting.telegram_client import TelegramClient
from .config import settings
from .db.repository import Repository
from .exceptions import NotFoundError
from .exchange.client import ExchangeClient
from .execution import ExecutionCoordinator, TriggerEvaluator
from .market_data import MarketDataCache
from .models import StopLossRecord, StrategyConfig, StrategyKind
from .price_stream import PriceStream
from .redis_client import RedisClient
from .register import StopLossRegister, normalize_symbol
from .scheduler import StrategyScheduler

logger = logging.getLogger(__name__)


class StopLossEngine:
    """Owns every component and exposes the operations a command layer calls."""

    def __init__(
        self,
        repository: Optional[Repository] = None,
        redis_client: Optional[RedisClient] = None,
        telegram_client: Optional[TelegramClient] = None,
        exchange: Optional[ExchangeClient] = None,
        market_data: Optional[MarketDataCache] = None,
    ):
        self.repo = repository or Repository()
        self.redis = redis_client or RedisClient()
        self.telegram = telegram_client or TelegramClient()
        self.dispatcher = EventDispatcher(self.redis, self.telegram)
        self.market_data = market_data or MarketDataCache(self.redis)
        self.exchange = exchange or ExchangeClient()

        self.register = StopLossRegister(self.repo, self.dispatcher)
        self.scheduler = StrategyScheduler(self.register, self.market_data, self.repo, self.dispatcher)
        self.coordinator = ExecutionCoordinator(self.register, self.scheduler, self.exchange, self.dispatcher)
        self.evaluator = TriggerEvaluator(self.register, self.coordinator, self.market_data, self.dispatcher)

        self.stream: Optional[PriceStream] = None
        self._stopped = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Connect, restore state and process ticks until ``stop`` is called."""
        logger.info("Starting Stop Loss Engine")

        self.repo.connect()
        self.repo.ensure_schema()

        try:
            self.redis.connect()
        except Exception as e:
            # Events still reach Telegram and the log without Redis
            logger.warning(f"Continuing without Redis broadcast: {e}")

        self.restore()
        self.scheduler.start()

        if not settings.exchange_enabled:
            logger.warning("Exchange credentials not configured; closing orders will be rejected")

        self.stream = PriceStream(self.watch_symbols(), self.evaluator.on_tick, on_error=self._on_stream_error)
        self.dispatcher.system(
            "Stop Loss Engine Started",
            "Real-time price monitoring and stop loss execution are now active",
        )
        self.stream.run()

    def restore(self):
        """Replay persisted state into memory."""
        self.register.load_active()
        self.scheduler.load()
        prices = self.redis.get_latest_prices()
        if prices:
            self.market_data.seed_prices(prices)
            logger.info(f"Restored {len(prices)} latest price(s) from Redis")

    def watch_symbols(self) -> List[str]:
        symbols = set(settings.watch_symbols)
        symbols.update(self.register.get_all())
        symbols.update(self.scheduler.symbols())
        return sorted(s.upper() for s in symbols)

    def stop(self):
        """Stop the feed and sweep, drain executions and close connections.

        Safe to call multiple times; the signal handler and the ``finally``
        block in ``main()`` may both invoke it.
        """
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping Stop Loss Engine...")
        if self.stream is not None:
            self.stream.stop()
        self.scheduler.stop(timeout=settings.http_timeout_seconds)
        self.evaluator.shutdown(wait=True)
        self.market_data.close()
        self.exchange.close()
        self.repo.close()
        self.redis.close()
        self.telegram.close()
        logger.info("Stop Loss Engine shutdown complete")

    def _on_stream_error(self, error: Exception):
        self.dispatcher.system("WebSocket Error", str(error))

    def _subscribe(self, symbol: str):
        """Make sure ticks arrive for a symbol that gained a stop or strategy."""
        if self.stream is not None:
            self.stream.add_symbols([symbol])

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def set_stop_loss(
        self,
        symbol: str,
        price,
        strategy=StrategyKind.MANUAL,
        timeframe: Optional[str] = None,
    ) -> StopLossRecord:
        record = self.register.set(symbol, price, strategy, timeframe)
        self._subscribe(record.symbol)
        return record

    def get_stop_loss(self, symbol: str) -> float:
        symbol = normalize_symbol(symbol)
        price = self.register.get(symbol)
        if price is None:
            raise NotFoundError(f"No active stop loss for {symbol}")
        return price

    def remove_stop_loss(self, symbol: str):
        self.register.remove(symbol)

    def list_stop_losses(self) -> List[Dict[str, Any]]:
        return [
            {"symbol": symbol, "price": price}
            for symbol, price in sorted(self.register.get_all().items())
        ]

    def stop_loss_history(self, symbol: Optional[str] = None, limit: int = 100) -> List[StopLossRecord]:
        return self.register.history(symbol, limit)

    def add_strategy(self, symbol: str, strategy, timeframe: str) -> StrategyConfig:
        config = self.scheduler.add(symbol, strategy, timeframe)
        self._subscribe(config.symbol)
        return config

    def remove_strategy(self, symbol: str):
        if not self.scheduler.remove(symbol):
            raise NotFoundError(f"No strategy registered for {normalize_symbol(symbol)}")

    def list_strategies(self) -> List[Dict[str, Any]]:
        return self.scheduler.list_all()

    def support_resistance(self, symbol: str, timeframe: str = "4h", last_n: int = 10) -> Dict[str, List[float]]:
        return self.market_data.support_resistance(normalize_symbol(symbol), timeframe, last_n)
