"""Stop Loss Engine - Automatic Position Protection Service

Keeps one protective price per instrument, recomputes it from candle data
using support/resistance strategies, and closes the position with a market
order when the live price crosses it.
"""

__version__ = "0.1.0"
