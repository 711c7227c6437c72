"""Support/resistance detection and strategy stop levels.

Everything here is pure computation over an ordered (oldest -> newest) candle
window. Each strategy calculator returns ``None`` when the window is too short
to produce a signal.
"""

from typing import Callable, Dict, List, Optional, Sequence

from .exceptions import ValidationError
from .models import Candle, StrategyKind, SupportLevel


WINDOW_SIZES = (3, 5, 7)
MERGE_TOLERANCE = 0.001  # levels within 0.1% are the same support
TEST_TOLERANCE = 0.002  # a low within 0.2% counts as a test of the level
SIGNIFICANT_DISTANCE = 0.98  # supports must sit at least 2% below price
RECENT_SUPPORTS = 5
FALLBACK_LOOKBACK = 10

MIN_CANDLES_LAST_SUPPORT = 5
MIN_CANDLES_INDICATORS = 20
FIBONACCI_LOOKBACK = 20


# ---------------------------------------------------------------------------
# Local minima
# ---------------------------------------------------------------------------

def find_local_minima(candles: Sequence[Candle]) -> List[SupportLevel]:
    """Find local lows using several symmetric window sizes.

    A candle is a local minimum when its low is <= every low within ``w``
    candles on each side. Levels within 0.1% of an already found level are
    merged, keeping the stronger one.

    Returns:
        Support levels, most recent (highest index) first
    """
    levels: List[SupportLevel] = []

    for window_size in WINDOW_SIZES:
        for i in range(window_size, len(candles) - window_size):
            current = candles[i]
            window = candles[i - window_size:i + window_size + 1]

            if not all(current.low <= c.low for c in window):
                continue

            strength = support_strength(window, window_size)
            existing = next(
                (lvl for lvl in levels if abs(lvl.price - current.low) < current.low * MERGE_TOLERANCE),
                None,
            )

            if existing is None:
                levels.append(SupportLevel(price=current.low, index=i, strength=strength))
            elif strength > existing.strength:
                levels[levels.index(existing)] = SupportLevel(price=current.low, index=i, strength=strength)

    return sorted(levels, key=lambda lvl: lvl.index, reverse=True)


def support_strength(window: Sequence[Candle], position: int) -> float:
    """Score a local minimum at ``window[position]``.

    Sum of volume strength (capped at 2), bounce strength (capped at 2) and
    test frequency (capped at 1).
    """
    candle = window[position]
    return (
        volume_strength(candle, window)
        + bounce_strength(window, position)
        + retest_frequency(candle.low, window)
    )


def volume_strength(candle: Candle, window: Sequence[Candle]) -> float:
    total_volume = sum(c.volume for c in window)
    if total_volume <= 0:
        return 0.0
    return min(candle.volume / total_volume * len(window), 2.0)


def bounce_strength(window: Sequence[Candle], position: int) -> float:
    """How far price rose after the minimum, within the window."""
    candle = window[position]
    subsequent = window[position + 1:]
    if not subsequent or candle.low <= 0:
        return 0.0

    max_bounce = max(c.high for c in subsequent) - candle.low
    return min(max_bounce / candle.low * 10, 2.0)


def retest_frequency(support_price: float, window: Sequence[Candle]) -> float:
    """How many candles in the window came back to the level."""
    tolerance = support_price * TEST_TOLERANCE
    tests = sum(1 for c in window if abs(c.low - support_price) <= tolerance)
    return min(tests / 5, 1.0)


def find_last_significant_support(
    levels: Sequence[SupportLevel],
    current_price: float,
    total_candles: int,
) -> Optional[float]:
    """Pick the support to use as a stop from the detected levels.

    Only levels at least 2% below the current price qualify. Among the five
    most recent qualifying levels, the best score of
    ``strength + 0.5 * index / total_candles`` wins. When nothing qualifies
    the strongest level overall is returned.
    """
    if not levels:
        return None

    significant = [lvl for lvl in levels if lvl.price < current_price * SIGNIFICANT_DISTANCE]

    if not significant:
        strongest = levels[0]
        for lvl in levels[1:]:
            if lvl.strength > strongest.strength:
                strongest = lvl
        return strongest.price

    def score(lvl: SupportLevel) -> float:
        return lvl.strength + (lvl.index / total_candles) * 0.5

    best = significant[0]
    for lvl in significant[1:RECENT_SUPPORTS]:
        if score(lvl) > score(best):
            best = lvl
    return best.price


# ---------------------------------------------------------------------------
# Strategy calculators
# ---------------------------------------------------------------------------

def find_last_support(candles: Sequence[Candle]) -> Optional[float]:
    if len(candles) < MIN_CANDLES_LAST_SUPPORT:
        return None

    levels = find_local_minima(candles)
    if not levels:
        # No clean minimum: fall back to the lowest recent low
        return min(c.low for c in candles[-FALLBACK_LOOKBACK:])

    current_price = candles[-1].close
    if not current_price:
        return None

    return find_last_significant_support(levels, current_price, len(candles))


def last_close_support(candles: Sequence[Candle]) -> Optional[float]:
    """Low of the last completed candle (the newest one is still forming)."""
    if len(candles) < 2:
        return None
    return candles[-2].low


def sma(values: Sequence[float], period: int) -> float:
    window = values[-period:]
    return sum(window) / period


def moving_average_support(candles: Sequence[Candle]) -> Optional[float]:
    if len(candles) < MIN_CANDLES_INDICATORS:
        return None

    closes = [c.close for c in candles]
    sma20 = sma(closes, 20)
    sma50 = sma(closes, min(50, len(closes)))
    return min(sma20, sma50)


def fibonacci_support(candles: Sequence[Candle]) -> Optional[float]:
    if len(candles) < MIN_CANDLES_INDICATORS:
        return None

    recent = candles[-FIBONACCI_LOOKBACK:]
    highest_high = max(c.high for c in recent)
    lowest_low = min(c.low for c in recent)

    price_range = highest_high - lowest_low
    fib236 = highest_high - price_range * 0.236
    fib382 = highest_high - price_range * 0.382
    fib500 = highest_high - price_range * 0.5

    current_price = candles[-1].close
    if fib382 < current_price:
        return fib382
    if fib500 < current_price:
        return fib500
    return fib236


def pivot_point_support(candles: Sequence[Candle]) -> Optional[float]:
    """Classic floor-trader S1 from the most recent candle."""
    if not candles:
        return None

    last = candles[-1]
    pivot = (last.high + last.low + last.close) / 3
    return 2 * pivot - last.high


LEVEL_CALCULATORS: Dict[StrategyKind, Callable[[Sequence[Candle]], Optional[float]]] = {
    StrategyKind.LAST_SUPPORT: find_last_support,
    StrategyKind.LAST_CLOSE: last_close_support,
    StrategyKind.MOVING_AVERAGE: moving_average_support,
    StrategyKind.FIBONACCI: fibonacci_support,
    StrategyKind.PIVOT_POINTS: pivot_point_support,
}


def compute_level(kind: StrategyKind, candles: Sequence[Candle]) -> Optional[float]:
    """Run the calculator registered for ``kind``."""
    calculator = LEVEL_CALCULATORS.get(kind)
    if calculator is None:
        raise ValidationError(f"Strategy '{kind.value}' cannot be computed from candles")
    return calculator(candles)


# ---------------------------------------------------------------------------
# Display levels
# ---------------------------------------------------------------------------

def support_levels(candles: Sequence[Candle], current_price: float, last_n: int = 10) -> List[float]:
    """Candle lows below the current price, nearest first."""
    supports = sorted((c.low for c in candles if c.low < current_price), reverse=True)
    return supports[:last_n]


def resistance_levels(candles: Sequence[Candle], current_price: float, last_n: int = 10) -> List[float]:
    """Candle highs above the current price, nearest first."""
    resistances = sorted(c.high for c in candles if c.high > current_price)
    return resistances[:last_n]
