"""
LookieThere - Frame Scheduler Tests
====================================
Validates the FrameScheduler loop:
- Detection / publish rate limiting
- Sticky blink latch (published exactly once)
- Failure semantics (skip tick, keep last result)
- Start / stop lifecycle and single in-flight detection
- QueueSink drop-oldest behaviour
"""

import os
import sys
import threading
import time
import unittest
from unittest.mock import MagicMock

import numpy as np

# Add project root
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lookie_analyzer import ExpressionAnalyzer
from lookie_model import DetectionError, ExpressionModel, ReplayModel
from lookie_scheduler import FrameScheduler, IntervalClock, QueueSink, SchedulerState
from tests.synthetic_faces import make_result, make_sample

FRAME = np.zeros((48, 64, 3), dtype=np.uint8)


class FakeClock:
    """Simulated display clock: each wait_next() advances `step_ms`."""

    def __init__(self, start_ms=1000.0, step_ms=16.0):
        self.now = start_ms - step_ms
        self.step_ms = step_ms

    def wait_next(self):
        self.now += self.step_ms
        return self.now

    def now_ms(self):
        return self.now


class SlowModel(ExpressionModel):
    """Blocks for `delay_s` per detect() and records peak concurrency."""

    def __init__(self, delay_s=0.0, clock=None, delay_ms=0.0):
        self.delay_s = delay_s
        self.clock = clock
        self.delay_ms = delay_ms
        self.active = 0
        self.max_active = 0
        self.detect_calls = 0
        self._lock = threading.Lock()

    @property
    def name(self):
        return "slow"

    def detect(self, frame):
        with self._lock:
            self.active += 1
            self.detect_calls += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay_s:
                time.sleep(self.delay_s)
            if self.clock is not None:
                self.clock.now += self.delay_ms
            return make_sample()
        finally:
            with self._lock:
                self.active -= 1


class CallbackModel(ExpressionModel):
    """Runs `callback` inside detect() to simulate events during a detection."""

    def __init__(self, callback):
        self.callback = callback
        self.detect_calls = 0

    @property
    def name(self):
        return "callback"

    def detect(self, frame):
        self.detect_calls += 1
        self.callback()
        return make_sample()


class TestFrameScheduler(unittest.TestCase):

    def setUp(self):
        self.published = []
        self.logger = MagicMock()

    def _make(self, model=None, frame_source=None, sink=None, **kwargs):
        return FrameScheduler(
            model=model or ReplayModel([make_sample()]),
            frame_source=frame_source or (lambda: FRAME),
            sink=sink if sink is not None else self.published.append,
            logger=self.logger,
            **kwargs,
        )

    def _tick_all(self, scheduler, times):
        for t in times:
            scheduler.tick(t)

    # ── Lifecycle ─────────────────────────────────────────────

    def test_warm_up_called_once_across_restarts(self):
        model = ReplayModel([make_sample()])
        scheduler = self._make(model=model)
        scheduler.start(threaded=False)
        scheduler.stop()
        scheduler.start(threaded=False)
        scheduler.stop()
        self.assertEqual(model.warm_up_calls, 1)
        self.assertEqual(scheduler.state, SchedulerState.IDLE)

    def test_failed_warm_up_stays_idle(self):
        model = MagicMock(spec=ExpressionModel)
        model.name = "broken"
        model.warm_up.side_effect = FileNotFoundError("missing.task")
        scheduler = self._make(model=model)

        with self.assertRaises(FileNotFoundError):
            scheduler.start(threaded=False)
        self.assertFalse(scheduler.running)

        model.warm_up.side_effect = None
        scheduler.start(threaded=False)
        self.assertTrue(scheduler.running)
        self.assertEqual(model.warm_up.call_count, 2)
        scheduler.stop()

    def test_idle_scheduler_ignores_ticks(self):
        scheduler = self._make()
        self.assertFalse(scheduler.tick(1000))
        self.assertEqual(scheduler.get_stats()["ticks"], 0)
        self.assertEqual(self.published, [])

    def test_stop_prevents_further_publishing(self):
        scheduler = self._make()
        scheduler.start(threaded=False)
        self.assertTrue(scheduler.tick(1000))
        scheduler.stop()
        self.assertFalse(scheduler.tick(1200))
        self.assertEqual(len(self.published), 1)

    def test_invalid_intervals_rejected(self):
        with self.assertRaises(ValueError):
            self._make(config={"detection_interval_ms": 0})
        with self.assertRaises(ValueError):
            self._make(config={"publish_interval_ms": -5})

    # ── Rate limiting ─────────────────────────────────────────

    def test_detection_and_publish_rates(self):
        """21 ticks at 16 ms: detections every 48 ms, publishes every 80 ms."""
        model = ReplayModel([make_sample()])
        scheduler = self._make(model=model)
        scheduler.start(threaded=False)
        self._tick_all(scheduler, [1000 + 16 * k for k in range(21)])

        self.assertEqual(model.detect_calls, 7)
        self.assertEqual([r.timestamp_ms for r in self.published],
                         [1000, 1048, 1144, 1240, 1288])
        stats = scheduler.get_stats()
        self.assertEqual(stats["detections"], 7)
        self.assertEqual(stats["publishes"], 5)
        self.assertEqual(stats["ticks"], 21)

    def test_publish_repeats_latest_result(self):
        scheduler = self._make(config={"detection_interval_ms": 1000})
        scheduler.start(threaded=False)
        self._tick_all(scheduler, [1000, 1080, 1160])
        self.assertEqual(len(self.published), 3)
        self.assertTrue(all(r.timestamp_ms == 1000 for r in self.published))

    def test_nothing_published_before_first_detection(self):
        model = ReplayModel([DetectionError("camera warming up")])
        scheduler = self._make(model=model)
        scheduler.start(threaded=False)
        self._tick_all(scheduler, [1000, 1100, 1200])
        self.assertEqual(self.published, [])
        self.assertEqual(scheduler.get_stats()["failures"], 3)

    # ── Sticky blink ──────────────────────────────────────────

    def test_blink_survives_until_published(self):
        analyzer = MagicMock()
        analyzer.analyze.side_effect = [
            make_result(blink=False, timestamp_ms=1000),
            make_result(blink=True, timestamp_ms=1040),
            make_result(blink=False, timestamp_ms=1075),
            make_result(blink=False, timestamp_ms=1115),
            make_result(blink=False, timestamp_ms=1160),
        ]
        scheduler = self._make(analyzer=analyzer)
        scheduler.start(threaded=False)
        self._tick_all(scheduler, [1000, 1040, 1075, 1080, 1115, 1160])

        self.assertEqual(analyzer.analyze.call_count, 5)
        self.assertEqual([(r.timestamp_ms, r.blink_detected) for r in self.published],
                         [(1000, False), (1075, True), (1160, False)])

    def test_blink_published_only_once(self):
        analyzer = MagicMock()
        analyzer.analyze.return_value = make_result(blink=True, timestamp_ms=1000)
        scheduler = self._make(analyzer=analyzer, config={"detection_interval_ms": 1000})
        scheduler.start(threaded=False)
        self._tick_all(scheduler, [1000, 1080, 1160])

        self.assertEqual([r.blink_detected for r in self.published], [True, False, False])
        # The result handed to the sink is not altered afterwards
        self.assertTrue(self.published[0].blink_detected)

    def test_blink_latched_over_no_face(self):
        analyzer = MagicMock()
        analyzer.analyze.side_effect = [
            make_result(blink=True, timestamp_ms=1000),
            make_result(face=False, timestamp_ms=1040),
        ]
        scheduler = self._make(analyzer=analyzer, config={"publish_interval_ms": 1000})
        scheduler.start(threaded=False)
        scheduler.last_publish_ms = 900.0
        self._tick_all(scheduler, [1000, 1040])
        self.assertTrue(scheduler.latched.blink_detected)
        self.assertFalse(scheduler.latched.face_detected)

    # ── Failures ──────────────────────────────────────────────

    def test_detection_failure_keeps_previous_result(self):
        model = ReplayModel([make_sample(), DetectionError("bad frame"), make_sample()])
        scheduler = self._make(model=model)
        scheduler.start(threaded=False)

        scheduler.tick(1000)
        first = scheduler.latched
        scheduler.tick(1033)                 # fails
        self.assertIs(scheduler.latched, first)
        scheduler.tick(1049)                 # no retry inside the interval
        self.assertEqual(model.detect_calls, 2)
        scheduler.tick(1066)
        self.assertEqual(model.detect_calls, 3)
        self.assertEqual(scheduler.latched.timestamp_ms, 1066)

        stats = scheduler.get_stats()
        self.assertEqual(stats["failures"], 1)
        self.assertEqual(stats["detections"], 2)

    def test_missing_frame_counts_as_failure(self):
        model = ReplayModel([make_sample()])
        scheduler = self._make(model=model, frame_source=lambda: None)
        scheduler.start(threaded=False)
        scheduler.tick(1000)
        self.assertEqual(model.detect_calls, 0)
        self.assertEqual(scheduler.get_stats()["failures"], 1)
        self.assertIsNone(scheduler.latched)

    def test_sink_error_is_logged_and_loop_continues(self):
        sink = MagicMock(side_effect=RuntimeError("ui gone"))
        scheduler = self._make(sink=sink, clock=FakeClock())
        scheduler.start(threaded=False)
        scheduler.run(max_ticks=12)

        self.assertGreaterEqual(sink.call_count, 2)
        self.logger.error.assert_called()
        self.assertTrue(scheduler.running)

    def test_audit_frames_logs_published_results(self):
        scheduler = self._make(config={"audit_frames": True})
        scheduler.start(threaded=False)
        scheduler.tick(1000)

        self.logger.log_result.assert_called_once()
        payload = self.logger.log_result.call_args[0][0]
        self.assertEqual(payload["published_at_ms"], 1000)
        self.assertEqual(payload["result"]["timestamp_ms"], 1000)

    # ── Concurrency ───────────────────────────────────────────

    def test_stop_during_detection_latches_without_publishing(self):
        holder = {}
        model = CallbackModel(lambda: holder["scheduler"].stop())
        scheduler = self._make(model=model)
        holder["scheduler"] = scheduler
        scheduler.start(threaded=False)

        self.assertFalse(scheduler.tick(1000))
        self.assertIsNotNone(scheduler.latched)
        self.assertEqual(self.published, [])

    def test_reentrant_tick_skips_detection(self):
        holder = {}
        model = CallbackModel(lambda: holder["scheduler"].tick(1040))
        scheduler = self._make(model=model)
        holder["scheduler"] = scheduler
        scheduler.start(threaded=False)

        scheduler.tick(1000)
        self.assertEqual(model.detect_calls, 1)
        self.assertEqual(scheduler.get_stats()["skipped_in_flight"], 1)
        self.assertFalse(scheduler.get_stats()["in_flight"])

    def test_slow_model_lowers_detection_rate(self):
        """16 ms ticks with a 100 ms model: detections never overlap or queue."""
        clock = FakeClock(step_ms=16.0)
        model = SlowModel(clock=clock, delay_ms=100.0)
        analyzer = MagicMock(wraps=ExpressionAnalyzer())
        scheduler = self._make(model=model, clock=clock, analyzer=analyzer)
        scheduler.start(threaded=False)
        scheduler.run(max_ticks=20)

        starts = [c.args[1] for c in analyzer.analyze.call_args_list]
        self.assertEqual(len(starts), model.detect_calls)
        self.assertGreater(len(starts), 1)
        self.assertTrue(all(b - a >= 100 for a, b in zip(starts, starts[1:])))
        self.assertEqual(model.max_active, 1)

    def test_threaded_loop_single_detection_in_flight(self):
        model = SlowModel(delay_s=0.1)
        sink = QueueSink(maxsize=2)
        scheduler = self._make(model=model, sink=sink, clock=IntervalClock(60))
        scheduler.start()
        time.sleep(0.5)
        scheduler.stop(timeout=1.0)

        self.assertEqual(model.max_active, 1)
        self.assertGreaterEqual(model.detect_calls, 2)
        self.assertLessEqual(model.detect_calls, 7)
        self.assertIsNotNone(sink.get())
        self.assertFalse(scheduler.running)

    def test_restart_while_detect_blocked_keeps_single_loop(self):
        entered = threading.Event()
        calls = []

        def _first_call_slow():
            calls.append(threading.current_thread())
            if len(calls) == 1:
                entered.set()
                time.sleep(0.4)

        model = CallbackModel(_first_call_slow)
        scheduler = self._make(model=model, clock=IntervalClock(60))
        scheduler.start()
        self.assertTrue(entered.wait(timeout=1.0))
        first_thread = calls[0]

        scheduler.stop(timeout=0.05)
        self.assertTrue(first_thread.is_alive())
        scheduler.start()
        time.sleep(0.6)

        loops = [t for t in threading.enumerate()
                 if t.name == "LookieScheduler" and t.is_alive()]
        self.assertEqual(len(loops), 1)
        self.assertFalse(first_thread.is_alive())
        # Later detections all come from the new loop
        self.assertTrue(all(t is not first_thread for t in calls[1:]))
        self.assertGreater(scheduler.get_stats()["skipped_in_flight"], 0)
        scheduler.stop()


class TestQueueSink(unittest.TestCase):

    def test_drops_oldest_when_full(self):
        sink = QueueSink(maxsize=2)
        for t in (1, 2, 3):
            sink(make_result(timestamp_ms=t))

        self.assertEqual(sink.dropped, 1)
        self.assertEqual(len(sink), 2)
        self.assertEqual(sink.get().timestamp_ms, 2)
        self.assertEqual(sink.get().timestamp_ms, 3)
        self.assertIsNone(sink.get())

    def test_get_latest_drains_queue(self):
        sink = QueueSink(maxsize=2)
        sink(make_result(timestamp_ms=1))
        sink(make_result(timestamp_ms=2))
        self.assertEqual(sink.get_latest().timestamp_ms, 2)
        self.assertEqual(len(sink), 0)
        self.assertIsNone(sink.get_latest())

    def test_get_with_timeout_returns_none_when_empty(self):
        self.assertIsNone(QueueSink().get(timeout=0.01))


class TestIntervalClock(unittest.TestCase):

    def test_ticks_are_spaced_by_period(self):
        clock = IntervalClock(hz=50)
        first = clock.wait_next()
        second = clock.wait_next()
        self.assertGreaterEqual(second - first, 15.0)

    def test_rejects_non_positive_rate(self):
        with self.assertRaises(ValueError):
            IntervalClock(hz=0)


if __name__ == "__main__":
    unittest.main()
