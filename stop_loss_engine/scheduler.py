"""Strategy scheduler - keeps strategy-driven stop losses up to date."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from . import analysis
from .alerting.dispatcher import EventDispatcher
from .config import settings
from .db.repository import Repository
from .exceptions import StopLossEngineError, ValidationError
from .market_data import MarketDataCache
from .models import StrategyConfig, TIMEFRAME_SECONDS
from .register import StopLossRegister, normalize_symbol, parse_strategy

logger = logging.getLogger(__name__)


class StrategyScheduler:
    """Per-symbol strategy configuration and the periodic recompute sweep.

    The sweep fires every ``sweep_interval_seconds`` and, by default,
    recomputes every registered symbol regardless of its own timeframe. Set
    ``sweep_respects_timeframe`` to only recompute symbols whose timeframe
    interval has elapsed since their last update.
    """

    def __init__(
        self,
        register: StopLossRegister,
        market_data: MarketDataCache,
        repository: Repository,
        dispatcher: Optional[EventDispatcher] = None,
        sweep_interval_seconds: Optional[int] = None,
        respect_timeframe: Optional[bool] = None,
        max_workers: Optional[int] = None,
    ):
        self.register = register
        self.market_data = market_data
        self.repo = repository
        self.dispatcher = dispatcher
        self.sweep_interval_seconds = sweep_interval_seconds or settings.sweep_interval_seconds
        self.respect_timeframe = (
            settings.sweep_respects_timeframe if respect_timeframe is None else respect_timeframe
        )
        self.max_workers = max_workers or settings.sweep_workers

        self._strategies: Dict[str, StrategyConfig] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Replay active strategy configs from the database."""
        configs = self.repo.find_all_active_strategies()
        with self._lock:
            for config in configs:
                self._strategies[config.symbol] = config
        logger.info(f"Loaded {len(configs)} active strategies from database")
        return len(configs)

    def add(self, symbol: str, strategy, timeframe: str) -> StrategyConfig:
        """Register a strategy, recompute once and persist it."""
        symbol = normalize_symbol(symbol)
        strategy = parse_strategy(strategy)
        if strategy not in analysis.LEVEL_CALCULATORS:
            raise ValidationError(f"Strategy '{strategy.value}' cannot drive automatic updates")
        if timeframe not in TIMEFRAME_SECONDS:
            raise ValidationError(
                f"Unsupported timeframe '{timeframe}', expected one of {', '.join(TIMEFRAME_SECONDS)}"
            )

        config = StrategyConfig(symbol=symbol, strategy=strategy, timeframe=timeframe)
        with self._lock:
            self._strategies[symbol] = config

        try:
            self.recompute(symbol)
        except StopLossEngineError as e:
            # Stays registered; the next sweep retries
            logger.error(f"Initial SL computation failed for {symbol}: {e}")

        try:
            self.repo.add_strategy(config)
        except StopLossEngineError:
            # Never saved, so it must not keep driving sweeps
            with self._lock:
                if self._strategies.get(symbol) is config:
                    del self._strategies[symbol]
            raise
        logger.info(f"Strategy {strategy.value} {timeframe} registered for {symbol}")
        return config

    def remove(self, symbol: str) -> bool:
        """Forget the strategy for ``symbol``. Returns False if none was registered."""
        symbol = normalize_symbol(symbol)
        with self._lock:
            removed = self._strategies.pop(symbol, None)
        self.repo.remove_strategy(symbol)
        if removed is not None:
            logger.info(f"Strategy removed for {symbol}")
        return removed is not None

    def get(self, symbol: str) -> Optional[StrategyConfig]:
        with self._lock:
            return self._strategies.get(symbol)

    def symbols(self) -> List[str]:
        with self._lock:
            return list(self._strategies)

    def list_all(self) -> List[Dict[str, Any]]:
        with self._lock:
            configs = list(self._strategies.values())
        return [
            {**config.to_dict(), "stop_loss_price": self.register.get(config.symbol)}
            for config in configs
        ]

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def recompute(self, symbol: str) -> Optional[float]:
        """Recalculate the stop level for ``symbol`` from fresh candles.

        Returns:
            The newly applied stop price, or None if nothing changed (no
            signal, same level, or strategy no longer registered)
        """
        config = self.get(symbol)
        if config is None:
            return None

        candles = self.market_data.fetch_candles(symbol, config.timeframe, settings.candle_limit)
        level = analysis.compute_level(config.strategy, candles)
        now = datetime.now(timezone.utc)
        config.last_update = now

        if level is None:
            logger.info(f"No {config.strategy.value} signal for {symbol} ({len(candles)} candles)")
            return None

        with self.register.lock(symbol):
            # Strategy may have been removed by an execution while we fetched
            if self.get(symbol) is not config:
                return None
            if level == self.register.get(symbol):
                return None
            self.register.set(symbol, level, config.strategy, config.timeframe)

        current_price = candles[-1].close
        distance_pct = (current_price - level) / current_price * 100 if current_price else 0.0
        logger.info(
            f"Updated SL for {symbol} ({config.strategy.value} {config.timeframe}) = ${level} "
            f"({distance_pct:.2f}% below current price ${current_price})"
        )

        if self.dispatcher is not None:
            self.dispatcher.strategy_alert(
                f"{config.strategy.value} {config.timeframe} on {symbol}",
                {
                    "strategy": config.strategy.value,
                    "timeframe": config.timeframe,
                    "symbol": symbol,
                    "stopLossPrice": level,
                    "currentPrice": current_price,
                    "distancePct": round(distance_pct, 2),
                },
            )
        return level

    def _safe_recompute(self, symbol: str) -> None:
        try:
            self.recompute(symbol)
            config = self.get(symbol)
            if config is not None and config.last_update is not None:
                self.repo.touch_strategy(symbol, config.last_update)
        except StopLossEngineError as e:
            logger.error(f"SL update failed for {symbol}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error recomputing {symbol}: {e}", exc_info=True)

    def sweep(self) -> int:
        """Recompute all due strategies concurrently. Returns how many ran."""
        now = datetime.now(timezone.utc)
        with self._lock:
            configs = list(self._strategies.values())

        due = [c.symbol for c in configs if not self.respect_timeframe or c.is_due(now)]
        if not due:
            return 0

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="sweep") as pool:
            list(pool.map(self._safe_recompute, due))

        logger.debug(f"Sweep recomputed {len(due)} of {len(configs)} strategies")
        return len(due)

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run one sweep now, then every ``sweep_interval_seconds`` until ``stop``."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="strategy-sweep", daemon=True)
        self._thread.start()
        logger.info(f"Strategy sweep started (interval: {self.sweep_interval_seconds}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error in strategy sweep: {e}", exc_info=True)
            self._stop_event.wait(self.sweep_interval_seconds)
