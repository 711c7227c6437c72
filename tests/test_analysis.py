"""
Unit tests for the support/resistance heuristics and strategy calculators.

All functions under test are pure; candles are built with the helpers in
tests/fakes.py (low = close - 1, high = close + 1 unless given).
"""

import unittest

from stop_loss_engine import analysis
from stop_loss_engine.exceptions import ValidationError
from stop_loss_engine.models import StrategyKind, SupportLevel

from fakes import make_candle, make_candles, v_shape_closes


class TestFindLocalMinima(unittest.TestCase):

    def test_v_shape_has_single_minimum_at_turn(self):
        candles = make_candles(v_shape_closes(down=8, up=8))
        levels = analysis.find_local_minima(candles)

        self.assertEqual(len(levels), 1)
        self.assertEqual(levels[0].index, 8)
        self.assertEqual(levels[0].price, candles[8].low)

    def test_monotonic_series_has_no_minima(self):
        candles = make_candles([130 - 2 * i for i in range(12)])
        self.assertEqual(analysis.find_local_minima(candles), [])

    def test_levels_sorted_most_recent_first(self):
        # Two separate dips: at index 8 (low 103) and index 24 (low 93)
        closes = v_shape_closes(down=8, up=8) + v_shape_closes(down=8, up=8, top=118, step=3)[1:]
        levels = analysis.find_local_minima(make_candles(closes))

        indexes = [lvl.index for lvl in levels]
        self.assertEqual(indexes, sorted(indexes, reverse=True))
        self.assertIn(8, indexes)

    def test_nearby_levels_are_merged(self):
        # Two dips 0.05% apart collapse into one level
        closes = v_shape_closes(down=8, up=8)
        candles = make_candles(closes)
        second = [make_candle(c, index=len(candles) + i) for i, c in enumerate(closes[1:])]
        second[7] = make_candle(closes[8], low=candles[8].low * 1.0005, index=len(candles) + 7)
        levels = analysis.find_local_minima(candles + second)

        self.assertEqual(len(levels), 1)


class TestStrengthComponents(unittest.TestCase):

    def test_volume_strength_is_capped(self):
        window = [make_candle(100, volume=1), make_candle(100, volume=1), make_candle(100, volume=100)]
        self.assertEqual(analysis.volume_strength(window[2], window), 2.0)

    def test_volume_strength_relative_to_average(self):
        window = make_candles([100, 100, 100, 100], volume=50)
        self.assertAlmostEqual(analysis.volume_strength(window[0], window), 1.0)

    def test_volume_strength_zero_volume_window(self):
        window = make_candles([100, 100, 100], volume=0)
        self.assertEqual(analysis.volume_strength(window[1], window), 0.0)

    def test_bounce_strength_uses_only_later_candles(self):
        window = [
            make_candle(150, low=149, high=200),  # before the minimum, ignored
            make_candle(101, low=100, high=102),
            make_candle(104, low=103, high=105),
        ]
        self.assertAlmostEqual(analysis.bounce_strength(window, 1), 0.5)

    def test_bounce_strength_without_subsequent_candles(self):
        window = make_candles([110, 100])
        self.assertEqual(analysis.bounce_strength(window, 1), 0.0)

    def test_bounce_strength_is_capped(self):
        window = [make_candle(101, low=100, high=101), make_candle(200, low=150, high=300)]
        self.assertEqual(analysis.bounce_strength(window, 0), 2.0)

    def test_retest_frequency(self):
        window = [
            make_candle(101, low=100),
            make_candle(101, low=100.1),
            make_candle(101, low=100.15),
            make_candle(106, low=105),
        ]
        self.assertAlmostEqual(analysis.retest_frequency(100, window), 0.6)


class TestFindLastSignificantSupport(unittest.TestCase):

    def test_never_returns_level_too_close_to_price(self):
        levels = [
            SupportLevel(price=99.0, index=10, strength=5.0),  # within 2% of price
            SupportLevel(price=90.0, index=5, strength=1.0),
        ]
        self.assertEqual(analysis.find_last_significant_support(levels, 100.0, 20), 90.0)

    def test_falls_back_to_strongest_when_none_qualify(self):
        levels = [
            SupportLevel(price=99.5, index=10, strength=1.0),
            SupportLevel(price=99.0, index=8, strength=3.0),
            SupportLevel(price=98.5, index=6, strength=2.0),
        ]
        self.assertEqual(analysis.find_last_significant_support(levels, 100.0, 20), 99.0)

    def test_only_five_most_recent_candidates_considered(self):
        levels = [
            SupportLevel(price=95.0, index=50, strength=1.0),
            SupportLevel(price=94.0, index=40, strength=1.0),
            SupportLevel(price=93.0, index=30, strength=1.0),
            SupportLevel(price=92.0, index=20, strength=1.0),
            SupportLevel(price=91.0, index=10, strength=1.0),
            SupportLevel(price=80.0, index=5, strength=10.0),  # strongest but too old
        ]
        self.assertEqual(analysis.find_last_significant_support(levels, 100.0, 100), 95.0)

    def test_strength_outweighs_recency(self):
        levels = [
            SupportLevel(price=95.0, index=90, strength=1.0),
            SupportLevel(price=92.0, index=60, strength=2.0),
        ]
        self.assertEqual(analysis.find_last_significant_support(levels, 100.0, 100), 92.0)

    def test_empty_levels(self):
        self.assertIsNone(analysis.find_last_significant_support([], 100.0, 10))


class TestStrategyCalculators(unittest.TestCase):

    def test_last_support_needs_five_candles(self):
        self.assertIsNone(analysis.find_last_support(make_candles([100, 99, 98, 99])))

    def test_last_support_on_v_shape(self):
        candles = make_candles(v_shape_closes(down=8, up=8))
        self.assertEqual(analysis.find_last_support(candles), candles[8].low)

    def test_last_support_fallback_is_lowest_recent_low(self):
        candles = make_candles([130 - 2 * i for i in range(12)])
        self.assertEqual(analysis.find_last_support(candles), min(c.low for c in candles[-10:]))

    def test_last_close_uses_previous_candle_low(self):
        self.assertEqual(analysis.last_close_support(make_candles([10, 20, 30])), 19)
        self.assertIsNone(analysis.last_close_support(make_candles([10])))

    def test_moving_average_needs_twenty_candles(self):
        self.assertIsNone(analysis.moving_average_support(make_candles(range(1, 20))))

    def test_moving_average_takes_lower_average(self):
        self.assertAlmostEqual(analysis.moving_average_support(make_candles(range(1, 31))), 15.5)
        self.assertAlmostEqual(analysis.moving_average_support(make_candles(range(1, 61))), 35.5)

    def _fib_candles(self, last_close):
        candles = [make_candle(110, low=105, high=115, index=i) for i in range(19)]
        candles[0] = make_candle(110, low=105, high=120, index=0)
        candles[5] = make_candle(110, low=100, high=112, index=5)
        candles.append(make_candle(last_close, low=108, high=116, index=19))
        return candles

    def test_fibonacci_prefers_382_below_price(self):
        self.assertAlmostEqual(analysis.fibonacci_support(self._fib_candles(115)), 120 - 20 * 0.382)

    def test_fibonacci_falls_back_to_236(self):
        # 38.2% (112.36) and 50% (110) are not strictly below a 110 close
        self.assertAlmostEqual(analysis.fibonacci_support(self._fib_candles(110)), 120 - 20 * 0.236)

    def test_fibonacci_needs_twenty_candles(self):
        self.assertIsNone(analysis.fibonacci_support(make_candles([100] * 19)))

    def test_pivot_point_s1(self):
        candles = make_candles([100, 100]) + [make_candle(100, low=90, high=110, index=2)]
        self.assertAlmostEqual(analysis.pivot_point_support(candles), 90.0)

    def test_pivot_point_empty(self):
        self.assertIsNone(analysis.pivot_point_support([]))


class TestComputeLevel(unittest.TestCase):

    def test_every_automatic_strategy_has_a_calculator(self):
        automatic = set(StrategyKind) - {StrategyKind.MANUAL}
        self.assertEqual(set(analysis.LEVEL_CALCULATORS), automatic)

    def test_manual_cannot_be_computed(self):
        with self.assertRaises(ValidationError):
            analysis.compute_level(StrategyKind.MANUAL, make_candles([100] * 30))

    def test_dispatches_to_calculator(self):
        candles = make_candles([100, 100]) + [make_candle(100, low=90, high=110, index=2)]
        self.assertAlmostEqual(analysis.compute_level(StrategyKind.PIVOT_POINTS, candles), 90.0)


class TestDisplayLevels(unittest.TestCase):

    def setUp(self):
        self.candles = make_candles([100, 95, 105, 90, 110])

    def test_supports_nearest_first_and_capped(self):
        self.assertEqual(analysis.support_levels(self.candles, 100, last_n=2), [99, 94])

    def test_resistances_nearest_first(self):
        self.assertEqual(analysis.resistance_levels(self.candles, 100), [101, 106, 111])


if __name__ == "__main__":
    unittest.main()
