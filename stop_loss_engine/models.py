"""Data models for Stop Loss Engine."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any


class StrategyKind(str, Enum):
    MANUAL = "manual"
    LAST_SUPPORT = "last_support"
    LAST_CLOSE = "last_close"
    MOVING_AVERAGE = "moving_average"
    FIBONACCI = "fibonacci"
    PIVOT_POINTS = "pivot_points"


class EventType(str, Enum):
    PRICE_UPDATE = "price_update"
    ORDER_UPDATE = "order_update"
    STOP_LOSS_TRIGGERED = "stop_loss_triggered"
    STRATEGY_ALERT = "strategy_alert"
    SYSTEM = "system"


# Candle interval -> seconds. Unknown timeframes are rejected at registration.
TIMEFRAME_SECONDS: Dict[str, int] = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "1h": 3600,
    "4h": 14400,
    "1d": 86400,
}


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar. Times are epoch milliseconds as returned by the exchange."""
    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_kline(cls, row) -> "Candle":
        """Build from a Binance kline array ``[openTime, o, h, l, c, v, closeTime, ...]``."""
        return cls(
            open_time=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
            close_time=int(row[6]),
        )


@dataclass
class SupportLevel:
    """Candidate support found in a candle window. Never persisted."""
    price: float
    index: int
    strength: float


@dataclass
class Tick:
    symbol: str
    price: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class StopLossRecord:
    """Stop loss record as stored in the database."""
    symbol: str
    price: float
    strategy: StrategyKind = StrategyKind.MANUAL
    timeframe: Optional[str] = None
    active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    triggered_at: Optional[datetime] = None
    triggered_price: Optional[float] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "price": self.price,
            "strategy": self.strategy.value,
            "timeframe": self.timeframe,
            "active": self.active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "triggered_at": self.triggered_at.isoformat() if self.triggered_at else None,
            "triggered_price": self.triggered_price,
        }


@dataclass
class StrategyConfig:
    """Per-symbol strategy registration driving stop loss recomputes."""
    symbol: str
    strategy: StrategyKind
    timeframe: str
    last_update: Optional[datetime] = None

    @property
    def interval_seconds(self) -> int:
        return TIMEFRAME_SECONDS.get(self.timeframe, 300)

    def is_due(self, now: datetime) -> bool:
        """True once the timeframe-derived interval has passed since the last update."""
        if self.last_update is None:
            return True
        return (now - self.last_update).total_seconds() >= self.interval_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "strategy": self.strategy.value,
            "timeframe": self.timeframe,
            "interval_seconds": self.interval_seconds,
            "last_update": self.last_update.isoformat() if self.last_update else None,
        }


@dataclass
class Position:
    """Open futures position as reported by the exchange."""
    pair: str
    active_pos: float
    margin_currency: str
    id: Optional[str] = None
    avg_price: Optional[float] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any], default_margin_currency: str = "USDT") -> "Position":
        return cls(
            pair=data.get("pair", ""),
            active_pos=float(data.get("active_pos") or 0),
            margin_currency=data.get("margin_currency_short_name") or default_margin_currency,
            id=data.get("id"),
            avg_price=float(data["avg_price"]) if data.get("avg_price") else None,
        )


@dataclass
class Event:
    """Notification emitted to the broadcast sink."""
    type: EventType
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:9])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "timestamp": int(self.timestamp.timestamp() * 1000),
        }

    def format_message(self) -> str:
        """Format event for a chat notification."""
        emoji = {
            EventType.STOP_LOSS_TRIGGERED: "🚨",
            EventType.ORDER_UPDATE: "✅",
            EventType.STRATEGY_ALERT: "🔄",
            EventType.SYSTEM: "ℹ️",
        }.get(self.type, "")
        return f"{emoji} {self.title}\n{self.message}".strip()
