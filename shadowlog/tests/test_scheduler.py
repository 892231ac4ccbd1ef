import asyncio
import unittest

from shadowlog.db.dedup import EventDeduper
from shadowlog.db.retry import RetryPolicy, backoff_delay
from shadowlog.db.scheduler import Debouncer, FlushScheduler, Throttle


class FlushSchedulerTests(unittest.TestCase):
    def test_enqueue_coalesces_paths(self) -> None:
        scheduler = FlushScheduler()
        scheduler.enqueue("/a")
        scheduler.enqueue("/b")
        scheduler.enqueue("/a")
        self.assertEqual(scheduler.begin_flush(), ["/a", "/b"])
        self.assertTrue(scheduler.in_flight)
        self.assertEqual(scheduler.pending, [])

    def test_begin_during_flight_defers(self) -> None:
        scheduler = FlushScheduler()
        scheduler.enqueue("/a")
        scheduler.begin_flush()
        scheduler.enqueue("/b")
        self.assertIsNone(scheduler.begin_flush())
        self.assertTrue(scheduler.finish_flush())
        self.assertFalse(scheduler.in_flight)
        self.assertEqual(scheduler.begin_flush(), ["/b"])
        self.assertFalse(scheduler.finish_flush())

    def test_clear_drops_pending(self) -> None:
        scheduler = FlushScheduler()
        scheduler.enqueue("/a")
        scheduler.clear()
        self.assertEqual(scheduler.begin_flush(), [])


class RetryPolicyTests(unittest.TestCase):
    def test_backoff_doubles_until_cap(self) -> None:
        delays = [backoff_delay(n, 0.2, 5.0) for n in range(7)]
        self.assertEqual(delays[:5], [0.2, 0.4, 0.8, 1.6, 3.2])
        self.assertEqual(delays[5:], [5.0, 5.0])

    def test_policy_from_millis(self) -> None:
        policy = RetryPolicy.from_millis(100, 1000, 2)
        self.assertAlmostEqual(policy.delay_for(3), 0.8)
        self.assertAlmostEqual(policy.delay_for(5), 1.0)
        self.assertTrue(policy.should_retry(1))
        self.assertFalse(policy.should_retry(2))


class EventDeduperTests(unittest.TestCase):
    def test_duplicates_are_rejected(self) -> None:
        deduper = EventDeduper(10)
        self.assertTrue(deduper.add("a"))
        self.assertFalse(deduper.add("a"))
        self.assertEqual(len(deduper), 1)

    def test_oldest_ids_are_evicted_first(self) -> None:
        deduper = EventDeduper(2)
        deduper.add("a")
        deduper.add("b")
        deduper.add("c")
        self.assertNotIn("a", deduper)
        self.assertIn("b", deduper)
        self.assertIn("c", deduper)
        self.assertTrue(deduper.add("a"))


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TimerTests(unittest.IsolatedAsyncioTestCase):
    async def test_debouncer_replaces_pending_timer(self) -> None:
        calls: list[int] = []
        debouncer = Debouncer(lambda: calls.append(1), 0.02)
        debouncer.trigger()
        debouncer.trigger()
        debouncer.trigger()
        self.assertTrue(debouncer.pending)
        await asyncio.sleep(0.08)
        self.assertEqual(calls, [1])
        self.assertFalse(debouncer.pending)

    async def test_debouncer_awaits_coroutine_callbacks(self) -> None:
        done = asyncio.Event()

        async def _callback() -> None:
            await asyncio.sleep(0)
            done.set()

        debouncer = Debouncer(_callback, 0)
        debouncer.trigger()
        await asyncio.wait_for(done.wait(), timeout=1)
        await debouncer.wait_idle()

    async def test_cancelled_debouncer_never_fires(self) -> None:
        calls: list[int] = []
        debouncer = Debouncer(lambda: calls.append(1), 0.01)
        debouncer.trigger()
        debouncer.cancel()
        await asyncio.sleep(0.03)
        self.assertEqual(calls, [])

    async def test_throttle_fires_leading_then_one_trailing(self) -> None:
        clock = _FakeClock()
        calls: list[float] = []
        throttle = Throttle(lambda: calls.append(clock.now), 0.02, clock=clock)

        throttle()
        self.assertEqual(calls, [100.0])

        clock.now = 100.005
        throttle()
        throttle()
        self.assertTrue(throttle.pending)
        self.assertEqual(len(calls), 1)

        clock.now = 100.02
        await asyncio.sleep(0.05)
        self.assertEqual(len(calls), 2)
        self.assertFalse(throttle.pending)

        clock.now = 100.5
        throttle()
        self.assertEqual(len(calls), 3)


if __name__ == "__main__":
    unittest.main()
