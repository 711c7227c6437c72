"""Exceptions raised by Stop Loss Engine components."""

from typing import Optional


class StopLossEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(StopLossEngineError):
    """Missing or invalid input (symbol, price, strategy, timeframe)."""


class NotFoundError(StopLossEngineError):
    """No active stop loss or strategy exists for the symbol."""


class PersistenceError(StopLossEngineError):
    """Reading from or writing to the database failed."""


class UpstreamError(StopLossEngineError):
    """A market-data or exchange call failed.

    ``status`` is the HTTP status code (``None`` for transport errors such as
    timeouts) and ``body`` the raw response text.
    """

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        self.status = status
        self.body = body
        text = message if status is None else f"{message} (status={status})"
        super().__init__(text)


__all__ = [
    "StopLossEngineError",
    "ValidationError",
    "NotFoundError",
    "PersistenceError",
    "UpstreamError",
]
