"""Trigger evaluation on price ticks and stop loss execution."""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Optional, Set

from .alerting.dispatcher import EventDispatcher
from .config import settings
from .exceptions import StopLossEngineError, UpstreamError
from .exchange.client import ExchangeClient
from .exchange.symbols import pair_matches, to_exchange_pair
from .market_data import MarketDataCache
from .models import Tick
from .register import StopLossRegister
from .scheduler import StrategyScheduler

logger = logging.getLogger(__name__)


class ExecutionCoordinator:
    """Closes the position for a symbol whose stop loss was breached.

    Stop loss and strategy state are only cleared after an order succeeded.
    If the exchange reports no matching position, or the order fails, the
    stop stays active and the next tick tries again. This favours eventual
    closure over exactly-once submission: while position data is stale a
    breach can produce more than one closing attempt.
    """

    def __init__(
        self,
        register: StopLossRegister,
        scheduler: StrategyScheduler,
        exchange: ExchangeClient,
        dispatcher: Optional[EventDispatcher] = None,
        cooldown_seconds: Optional[float] = None,
    ):
        self.register = register
        self.scheduler = scheduler
        self.exchange = exchange
        self.dispatcher = dispatcher
        self.cooldown_seconds = (
            settings.execution_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        )
        self._last_attempt: Dict[str, float] = {}

    def _in_cooldown(self, symbol: str) -> bool:
        if self.cooldown_seconds <= 0:
            return False
        last = self._last_attempt.get(symbol)
        return last is not None and time.monotonic() - last < self.cooldown_seconds

    def execute(self, symbol: str, current_price: float) -> int:
        """Submit closing orders for every open long position in ``symbol``.

        Returns:
            Number of orders placed
        """
        with self.register.lock(symbol):
            # Re-check: a recompute or an earlier execution may have moved or cleared the stop
            if not self.register.check(symbol, current_price):
                return 0
            if self._in_cooldown(symbol):
                logger.debug(f"{symbol}: execution attempt suppressed by cooldown")
                return 0
            self._last_attempt[symbol] = time.monotonic()

            logger.warning(
                f"STOP LOSS TRIGGERED for {symbol} at {current_price} "
                f"(stop {self.register.get(symbol)})"
            )

            margin_currency = settings.default_margin_currency
            pair = to_exchange_pair(symbol, margin_currency)
            positions = self.exchange.get_positions(pair)
            matching = [p for p in positions if pair_matches(p.pair, symbol, margin_currency)]

            if not matching:
                logger.warning(f"No open position found for {symbol} ({pair}); stop loss stays active")
                return 0

            placed = 0
            for position in matching:
                if position.active_pos <= 0:
                    continue

                try:
                    result = self.exchange.market_close(position)
                except UpstreamError as e:
                    logger.error(
                        f"Market sell failed for {position.pair} qty {position.active_pos}: {e} {e.body}"
                    )
                    continue

                placed += 1
                logger.info(f"Market sell executed for {symbol}, quantity: {position.active_pos}")
                self._finalize(symbol, current_price)

                if self.dispatcher is not None:
                    order_id = _order_id(result) or position.pair
                    self.dispatcher.order_update(order_id, "placed", {
                        "symbol": symbol,
                        "pair": position.pair,
                        "side": "sell",
                        "quantity": position.active_pos,
                        "price": current_price,
                    })
            return placed

    def _finalize(self, symbol: str, current_price: float) -> None:
        try:
            self.register.trigger(symbol, current_price)
        except StopLossEngineError as e:
            logger.error(f"Failed to record trigger for {symbol}: {e}")
        try:
            self.scheduler.remove(symbol)
        except StopLossEngineError as e:
            logger.error(f"Failed to remove strategy for {symbol}: {e}")


def _order_id(result) -> Optional[str]:
    if isinstance(result, list) and result:
        result = result[0]
    if isinstance(result, dict):
        order_id = result.get("id")
        if order_id is None and isinstance(result.get("orders"), list) and result["orders"]:
            order_id = result["orders"][0].get("id")
        return str(order_id) if order_id is not None else None
    return None


class TriggerEvaluator:
    """Handles every price tick: cache it, broadcast it, check the stop.

    A breach is handed to the coordinator on a bounded worker pool so a slow
    exchange call never holds up ticks for other symbols. While an execution
    for a symbol is in flight, further breaching ticks for it are dropped.
    """

    def __init__(
        self,
        register: StopLossRegister,
        coordinator: ExecutionCoordinator,
        market_data: MarketDataCache,
        dispatcher: Optional[EventDispatcher] = None,
        max_workers: Optional[int] = None,
    ):
        self.register = register
        self.coordinator = coordinator
        self.market_data = market_data
        self.dispatcher = dispatcher
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or settings.execution_workers,
            thread_name_prefix="execution",
        )
        self._in_flight: Set[str] = set()
        self._lock = threading.Lock()

    def on_tick(self, tick: Tick) -> Optional[Future]:
        """Process one tick. Never raises; returns the execution future on breach."""
        try:
            self.market_data.update_price(tick.symbol, tick.price)
            if self.dispatcher is not None:
                self.dispatcher.price_update(tick.symbol, tick.price)

            if not self.register.check(tick.symbol, tick.price):
                return None

            with self._lock:
                if tick.symbol in self._in_flight:
                    return None
                self._in_flight.add(tick.symbol)

            try:
                future = self._pool.submit(self.coordinator.execute, tick.symbol, tick.price)
            except RuntimeError:
                # Pool already shut down
                with self._lock:
                    self._in_flight.discard(tick.symbol)
                raise
            future.add_done_callback(lambda f, symbol=tick.symbol: self._finished(symbol, f))
            return future
        except Exception as e:
            logger.error(f"Error handling tick for {tick.symbol}: {e}", exc_info=True)
            return None

    def _finished(self, symbol: str, future: Future) -> None:
        with self._lock:
            self._in_flight.discard(symbol)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Stop loss execution failed for {symbol}: {error}")

    def in_flight(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._in_flight

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
