"""Stop loss register - the authoritative active stop price per symbol."""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .alerting.dispatcher import EventDispatcher
from .db.repository import Repository
from .exceptions import NotFoundError, ValidationError
from .models import StopLossRecord, StrategyKind

logger = logging.getLogger(__name__)


def normalize_symbol(symbol: str) -> str:
    if not symbol or not isinstance(symbol, str) or not symbol.strip():
        raise ValidationError("Symbol is required")
    return symbol.strip().upper()


def validate_price(price) -> float:
    try:
        value = float(price)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid price: {price!r}")
    if value != value or value <= 0:  # NaN or non-positive
        raise ValidationError(f"Price must be a positive number, got {price!r}")
    return value


def parse_strategy(strategy) -> StrategyKind:
    try:
        return StrategyKind(strategy)
    except ValueError:
        raise ValidationError(f"Unknown strategy: {strategy!r}")


class StopLossRegister:
    """Owns the active stop loss for every symbol.

    Lifecycle per symbol: no stop -> active (``set``) -> triggered or removed.
    A later ``set`` starts a new generation (a new database record); records
    are never reactivated.

    The in-memory map answers ``check`` on every tick without touching the
    database. It only ever holds prices that were persisted successfully.
    ``lock(symbol)`` hands out a per-symbol re-entrant lock so a strategy
    recompute cannot race a trigger-and-clear for the same symbol.
    """

    def __init__(self, repository: Repository, dispatcher: Optional[EventDispatcher] = None):
        self.repo = repository
        self.dispatcher = dispatcher
        self._levels: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._symbol_locks: Dict[str, threading.RLock] = {}

    def lock(self, symbol: str) -> threading.RLock:
        with self._lock:
            symbol_lock = self._symbol_locks.get(symbol)
            if symbol_lock is None:
                symbol_lock = self._symbol_locks[symbol] = threading.RLock()
            return symbol_lock

    def load_active(self) -> int:
        """Replay active stop losses from the database into memory."""
        records = self.repo.find_all_active_stop_losses()
        with self._lock:
            for record in records:
                self._levels[record.symbol] = record.price
        logger.info(f"Loaded {len(records)} active stop losses from database")
        return len(records)

    def set(
        self,
        symbol: str,
        price,
        strategy: StrategyKind = StrategyKind.MANUAL,
        timeframe: Optional[str] = None,
    ) -> StopLossRecord:
        """Create or move the active stop loss for ``symbol``.

        The record is written first; memory is updated only once the write
        succeeded, so a ``PersistenceError`` leaves the previous price in force.
        """
        symbol = normalize_symbol(symbol)
        price = validate_price(price)
        strategy = parse_strategy(strategy)

        with self.lock(symbol):
            record = None
            if self.repo.find_active_stop_loss(symbol) is not None:
                record = self.repo.update_stop_loss(symbol, price, strategy, timeframe)
            if record is None:
                record = self.repo.create_stop_loss(symbol, price, strategy, timeframe)
                logger.info(f"Stop loss set for {symbol} at ${price} ({strategy.value})")
            else:
                logger.info(f"Updated stop loss for {symbol} to ${price} ({strategy.value})")

            with self._lock:
                self._levels[symbol] = price
        return record

    def get(self, symbol: str) -> Optional[float]:
        with self._lock:
            return self._levels.get(symbol)

    def get_all(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._levels)

    def remove(self, symbol: str) -> None:
        """Clear the active stop loss and deactivate its record.

        Raises:
            NotFoundError: nothing was active for the symbol
        """
        symbol = normalize_symbol(symbol)
        with self.lock(symbol):
            with self._lock:
                previous = self._levels.pop(symbol, None)
            record = self.repo.deactivate_stop_loss(symbol)
            if previous is None and record is None:
                raise NotFoundError(f"No active stop loss for {symbol}")
        logger.info(f"Stop loss removed for {symbol}")

    def check(self, symbol: str, current_price: float) -> bool:
        """True if ``current_price`` is at or below the active stop (long exit)."""
        with self._lock:
            stop_price = self._levels.get(symbol)
        return stop_price is not None and current_price <= stop_price

    def trigger(self, symbol: str, current_price: float) -> bool:
        """Close the active generation after the position was exited.

        Returns:
            False if there was no active stop loss (already triggered or
            removed); no event is emitted in that case.
        """
        with self.lock(symbol):
            with self._lock:
                stop_price = self._levels.get(symbol)
            if stop_price is None:
                return False

            self.repo.trigger_stop_loss(symbol, current_price, datetime.now(timezone.utc))
            with self._lock:
                self._levels.pop(symbol, None)

        logger.warning(f"Stop loss triggered for {symbol} at ${current_price} (stop ${stop_price})")
        if self.dispatcher is not None:
            self.dispatcher.stop_loss_triggered(symbol, current_price, stop_price)
        return True

    def history(self, symbol: Optional[str] = None, limit: int = 100) -> List[StopLossRecord]:
        """Stop loss records, newest first."""
        if limit <= 0:
            raise ValidationError("limit must be positive")
        if symbol:
            symbol = normalize_symbol(symbol)
        return self.repo.get_stop_loss_history(symbol, limit)
