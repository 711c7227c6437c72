"""In-memory collaborators shared by the unit tests.

No database, Redis or network is touched: the repository below keeps rows in
lists with the same semantics as ``stop_loss_engine.db.repository``.
"""

import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from stop_loss_engine.exceptions import PersistenceError
from stop_loss_engine.models import Candle, StopLossRecord, StrategyConfig, StrategyKind


class InMemoryRepository:
    """Drop-in for ``Repository`` used by register/scheduler tests."""

    def __init__(self):
        self.stop_losses: List[StopLossRecord] = []
        self.strategies: List[StrategyConfig] = []
        self.fail_writes = False
        self.connected = False
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _now(self) -> datetime:
        # Strictly increasing so newest-first ordering is deterministic
        self._clock += timedelta(seconds=1)
        return self._clock

    def _check_writable(self, action: str):
        if self.fail_writes:
            raise PersistenceError(f"Failed to {action}: database unavailable")

    def connect(self):
        self.connected = True

    def close(self):
        self.connected = False

    def ensure_schema(self):
        pass

    def active_records(self, symbol: str) -> List[StopLossRecord]:
        return [r for r in self.stop_losses if r.symbol == symbol and r.active]

    # Stop losses

    def find_active_stop_loss(self, symbol: str) -> Optional[StopLossRecord]:
        active = self.active_records(symbol)
        return replace(active[0]) if active else None

    def find_all_active_stop_losses(self) -> List[StopLossRecord]:
        return [replace(r) for r in self.stop_losses if r.active]

    def create_stop_loss(self, symbol, price, strategy=StrategyKind.MANUAL, timeframe=None):
        self._check_writable("create stop loss")
        if self.active_records(symbol):
            raise PersistenceError("duplicate key value violates unique constraint \"stop_losses_one_active\"")
        now = self._now()
        record = StopLossRecord(
            id=next(self._ids), symbol=symbol, price=price, strategy=strategy,
            timeframe=timeframe, active=True, created_at=now, updated_at=now,
        )
        self.stop_losses.append(record)
        return replace(record)

    def update_stop_loss(self, symbol, price, strategy=StrategyKind.MANUAL, timeframe=None):
        self._check_writable("update stop loss")
        for record in self.active_records(symbol):
            record.price = price
            record.strategy = strategy
            record.timeframe = timeframe or record.timeframe
            record.updated_at = self._now()
            return replace(record)
        return None

    def deactivate_stop_loss(self, symbol):
        self._check_writable("deactivate stop loss")
        for record in self.active_records(symbol):
            record.active = False
            record.updated_at = self._now()
            return replace(record)
        return None

    def trigger_stop_loss(self, symbol, triggered_price, triggered_at=None):
        self._check_writable("trigger stop loss")
        for record in self.active_records(symbol):
            record.active = False
            record.triggered_at = triggered_at or self._now()
            record.triggered_price = triggered_price
            return replace(record)
        return None

    def get_stop_loss_history(self, symbol=None, limit=100):
        records = [r for r in self.stop_losses if symbol is None or r.symbol == symbol]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [replace(r) for r in records[:limit]]

    # Strategies

    def find_all_active_strategies(self):
        return [replace(c) for c in self.strategies]

    def add_strategy(self, config):
        self._check_writable("add strategy")
        self.strategies = [c for c in self.strategies if c.symbol != config.symbol]
        self.strategies.append(replace(config))

    def remove_strategy(self, symbol):
        self._check_writable("remove strategy")
        self.strategies = [c for c in self.strategies if c.symbol != symbol]

    def touch_strategy(self, symbol, last_update):
        for config in self.strategies:
            if config.symbol == symbol:
                config.last_update = last_update


def make_candle(close: float, low: Optional[float] = None, high: Optional[float] = None,
                volume: float = 100.0, index: int = 0) -> Candle:
    return Candle(
        open_time=index * 60_000,
        close_time=index * 60_000 + 59_999,
        open=close,
        high=high if high is not None else close + 1,
        low=low if low is not None else close - 1,
        close=close,
        volume=volume,
    )


def make_candles(closes, volume: float = 100.0) -> List[Candle]:
    return [make_candle(c, volume=volume, index=i) for i, c in enumerate(closes)]


def v_shape_closes(down: int = 8, up: int = 8, top: float = 120.0, step: float = 2.0) -> List[float]:
    """Closes falling ``down`` times then rising ``up`` times; the turn is at index ``down``."""
    falling = [top - step * i for i in range(down + 1)]
    bottom = falling[-1]
    rising = [bottom + step * i for i in range(1, up + 1)]
    return falling + rising
