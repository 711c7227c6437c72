"""
Unit tests for trigger evaluation and stop loss execution.

The exchange and scheduler are MagicMocks; the register is real, backed by
the in-memory repository, so trigger bookkeeping is exercised end to end.
"""

import threading
import unittest
from unittest.mock import MagicMock

from stop_loss_engine.alerting.dispatcher import EventDispatcher
from stop_loss_engine.exceptions import UpstreamError
from stop_loss_engine.execution import ExecutionCoordinator, TriggerEvaluator
from stop_loss_engine.models import EventType, Position, Tick
from stop_loss_engine.register import StopLossRegister

from fakes import InMemoryRepository


def _position(pair="B-BTC_USDT", size=0.5):
    return Position(pair=pair, active_pos=size, margin_currency="USDT", id=f"pos-{pair}")


class TestExecutionCoordinator(unittest.TestCase):

    def setUp(self):
        self.repo = InMemoryRepository()
        self.dispatcher = EventDispatcher()
        self.register = StopLossRegister(self.repo, self.dispatcher)
        self.scheduler = MagicMock()
        self.exchange = MagicMock()
        self.exchange.get_positions.return_value = [_position(), _position("B-ETH_USDT", 2)]
        self.exchange.market_close.return_value = {"id": "order-1", "status": "initial"}
        self.coordinator = ExecutionCoordinator(
            self.register, self.scheduler, self.exchange, self.dispatcher, cooldown_seconds=0,
        )
        self.register.set("BTCUSDT", 45000)

    def test_breach_closes_matching_position(self):
        placed = self.coordinator.execute("BTCUSDT", 44900)

        self.assertEqual(placed, 1)
        self.exchange.get_positions.assert_called_once_with("B-BTC_USDT")
        self.exchange.market_close.assert_called_once()
        self.assertEqual(self.exchange.market_close.call_args[0][0].pair, "B-BTC_USDT")
        self.scheduler.remove.assert_called_once_with("BTCUSDT")

        self.assertIsNone(self.register.get("BTCUSDT"))
        record = self.repo.stop_losses[0]
        self.assertFalse(record.active)
        self.assertEqual(record.triggered_price, 44900)

        triggered = self.dispatcher.recent(EventType.STOP_LOSS_TRIGGERED)
        self.assertEqual(len(triggered), 1)
        orders = self.dispatcher.recent(EventType.ORDER_UPDATE)
        self.assertEqual(len(orders), 1)
        self.assertEqual(orders[0].data["orderId"], "order-1")
        self.assertEqual(orders[0].data["quantity"], 0.5)

    def test_second_execution_is_noop(self):
        self.coordinator.execute("BTCUSDT", 44900)
        self.assertEqual(self.coordinator.execute("BTCUSDT", 44800), 0)

        self.assertEqual(self.exchange.market_close.call_count, 1)
        self.assertEqual(len(self.dispatcher.recent(EventType.STOP_LOSS_TRIGGERED)), 1)

    def test_no_matching_position_keeps_stop(self):
        self.exchange.get_positions.return_value = [_position("B-ETH_USDT", 2)]

        self.assertEqual(self.coordinator.execute("BTCUSDT", 44900), 0)
        self.assertEqual(self.register.get("BTCUSDT"), 45000)
        self.scheduler.remove.assert_not_called()

        # Next breach tries again
        self.exchange.get_positions.return_value = [_position()]
        self.assertEqual(self.coordinator.execute("BTCUSDT", 44850), 1)

    def test_order_failure_leaves_state_untouched(self):
        self.exchange.market_close.side_effect = UpstreamError(
            "Exchange request failed", status=400, body='{"message":"Insufficient margin"}',
        )

        self.assertEqual(self.coordinator.execute("BTCUSDT", 44900), 0)

        self.assertEqual(self.register.get("BTCUSDT"), 45000)
        self.assertTrue(self.repo.stop_losses[0].active)
        self.scheduler.remove.assert_not_called()
        self.assertEqual(self.dispatcher.recent(EventType.STOP_LOSS_TRIGGERED), [])

    def test_zero_size_positions_skipped(self):
        self.exchange.get_positions.return_value = [_position(size=0)]

        self.assertEqual(self.coordinator.execute("BTCUSDT", 44900), 0)
        self.exchange.market_close.assert_not_called()
        self.assertEqual(self.register.get("BTCUSDT"), 45000)

    def test_price_above_stop_does_nothing(self):
        self.assertEqual(self.coordinator.execute("BTCUSDT", 45100), 0)
        self.exchange.get_positions.assert_not_called()

    def test_cooldown_suppresses_retries(self):
        coordinator = ExecutionCoordinator(
            self.register, self.scheduler, self.exchange, self.dispatcher, cooldown_seconds=60,
        )
        self.exchange.get_positions.return_value = []

        coordinator.execute("BTCUSDT", 44900)
        coordinator.execute("BTCUSDT", 44900)

        self.assertEqual(self.exchange.get_positions.call_count, 1)

    def test_positions_lookup_failure_propagates(self):
        self.exchange.get_positions.side_effect = UpstreamError("timeout")

        with self.assertRaises(UpstreamError):
            self.coordinator.execute("BTCUSDT", 44900)
        self.assertEqual(self.register.get("BTCUSDT"), 45000)


class TestTriggerEvaluator(unittest.TestCase):

    def setUp(self):
        self.repo = InMemoryRepository()
        self.redis = MagicMock()
        self.dispatcher = EventDispatcher(redis_client=self.redis)
        self.register = StopLossRegister(self.repo, self.dispatcher)
        self.market_data = MagicMock()
        self.coordinator = MagicMock()
        self.coordinator.execute.return_value = 1
        self.evaluator = TriggerEvaluator(
            self.register, self.coordinator, self.market_data, self.dispatcher, max_workers=2,
        )
        self.register.set("BTCUSDT", 45000)

    def tearDown(self):
        self.evaluator.shutdown(wait=True)

    def test_tick_updates_price_and_broadcasts(self):
        self.assertIsNone(self.evaluator.on_tick(Tick(symbol="BTCUSDT", price=46000)))

        self.market_data.update_price.assert_called_once_with("BTCUSDT", 46000)
        payload = self.redis.publish_event.call_args[0][0]
        self.assertEqual(payload["type"], "price_update")
        self.assertEqual(payload["data"], {"symbol": "BTCUSDT", "price": 46000})
        self.coordinator.execute.assert_not_called()

    def test_breach_submits_execution(self):
        future = self.evaluator.on_tick(Tick(symbol="BTCUSDT", price=44900))

        self.assertIsNotNone(future)
        self.assertEqual(future.result(timeout=5), 1)
        self.coordinator.execute.assert_called_once_with("BTCUSDT", 44900)

    def test_unwatched_symbol_never_executes(self):
        self.assertIsNone(self.evaluator.on_tick(Tick(symbol="ETHUSDT", price=1.0)))
        self.coordinator.execute.assert_not_called()

    def test_in_flight_guard_drops_duplicate_breaches(self):
        release = threading.Event()
        self.coordinator.execute.side_effect = lambda symbol, price: release.wait(5)

        first = self.evaluator.on_tick(Tick(symbol="BTCUSDT", price=44900))
        self.assertTrue(self.evaluator.in_flight("BTCUSDT"))
        second = self.evaluator.on_tick(Tick(symbol="BTCUSDT", price=44800))

        release.set()
        first.result(timeout=5)
        self.assertIsNone(second)
        self.evaluator.shutdown(wait=True)
        self.assertEqual(self.coordinator.execute.call_count, 1)

    def test_shut_down_pool_releases_in_flight_slot(self):
        self.evaluator.shutdown(wait=True)

        self.assertIsNone(self.evaluator.on_tick(Tick(symbol="BTCUSDT", price=44900)))
        self.assertFalse(self.evaluator.in_flight("BTCUSDT"))

    def test_tick_errors_are_contained(self):
        self.market_data.update_price.side_effect = RuntimeError("cache broken")

        self.assertIsNone(self.evaluator.on_tick(Tick(symbol="BTCUSDT", price=44900)))


if __name__ == "__main__":
    unittest.main()
