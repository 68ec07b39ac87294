"""
LookieThere - Frame Scheduler
==============================
Drives the ExpressionAnalyzer from a display-rate clock and republishes
the latest result to a consumer at a lower, independent rate.

Two decoupled intervals:
  - detection every >= 33 ms (~30 Hz): several samples per blink
    (blinks last ~150-400 ms)
  - publish every >= 80 ms (~12 Hz): enough for a human-facing UI,
    bounds downstream update cost

Sticky blink: a blink seen by an unpublished detection survives later
detections until it has been published once.

Concurrency:
  - One loop thread. The next tick is requested only after the current
    tick (including its blocking detection call) returns, so at most one
    detection call is ever in flight. A slow model lowers the effective
    detection rate instead of queuing work.
  - A non-blocking in-flight lock makes any re-entrant / concurrent
    tick() skip detection instead of overlapping.
  - stop() ends future ticks; it does not interrupt a running detect().
    A result that lands after stop() is latched but never published.
  - Each start() gets its own stop token, so a loop left inside a slow
    detect() by stop() exits on return even after a restart.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Optional

from lookie_analyzer import ExpressionAnalyzer
from lookie_logger import LookieLogger, get_logger
from lookie_model import DetectionError, ExpressionModel
from lookie_types import DetectionResult
from lookie_utils_core import DEFAULT_CONFIG as _CORE_DEFAULTS

_log = logging.getLogger("LookieScheduler")

DEFAULT_CONFIG = {
    **_CORE_DEFAULTS["scheduler"],
    "log_dir": _CORE_DEFAULTS["logging"]["log_dir"],
}

ResultSink = Callable[[DetectionResult], Any]
FrameSource = Callable[[], Any]


class SchedulerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


# ═══════════════════════════════════════════════════════════════
# Tick Clock
# ═══════════════════════════════════════════════════════════════

class IntervalClock:
    """Display-rate tick source returning monotonic milliseconds.

    wait_next() sleeps until the next tick boundary. When the caller is
    late (slow detection) the tick fires immediately and the schedule
    re-anchors instead of bursting to catch up.
    """

    def __init__(self, hz: float = 60.0):
        if hz <= 0:
            raise ValueError(f"Tick rate must be positive, got {hz}")
        self.period_s = 1.0 / hz
        self._next: Optional[float] = None

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0

    def wait_next(self) -> float:
        now = time.monotonic()
        if self._next is None or self._next <= now:
            self._next = now
        else:
            time.sleep(self._next - now)
        self._next += self.period_s
        return self.now_ms()


# ═══════════════════════════════════════════════════════════════
# Result Sinks
# ═══════════════════════════════════════════════════════════════

class QueueSink:
    """Bounded result channel for consumers on another thread.

    Holds at most `maxsize` results; when full the oldest is dropped so a
    slow consumer never stalls the scheduler.
    """

    def __init__(self, maxsize: int = 2):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def __call__(self, result: DetectionResult) -> None:
        try:
            self._queue.put_nowait(result)
        except queue.Full:
            try:
                self._queue.get_nowait()  # Drop old
                self.dropped += 1
            except queue.Empty:
                pass
            self._queue.put_nowait(result)

    def get(self, timeout: Optional[float] = None) -> Optional[DetectionResult]:
        """Next pending result (oldest first), or None."""
        try:
            if timeout is None:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_latest(self) -> Optional[DetectionResult]:
        """Drain the queue and return the newest result, or None."""
        latest = None
        while True:
            try:
                latest = self._queue.get_nowait()
            except queue.Empty:
                return latest

    def __len__(self) -> int:
        return self._queue.qsize()


# ═══════════════════════════════════════════════════════════════
# FrameScheduler
# ═══════════════════════════════════════════════════════════════

class FrameScheduler:
    """
    Rate-limited detection loop with latched, rate-limited publishing.

    Usage:
        scheduler = FrameScheduler(model, camera_read, on_result)
        scheduler.start()      # warm_up() once, spawn tick thread
        ...
        scheduler.stop()
    """

    def __init__(
        self,
        model: ExpressionModel,
        frame_source: FrameSource,
        sink: ResultSink,
        clock: Optional[Any] = None,
        analyzer: Optional[ExpressionAnalyzer] = None,
        config: Optional[dict] = None,
        logger: Optional[LookieLogger] = None,
    ):
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self.detection_interval_ms = float(self.config["detection_interval_ms"])
        self.publish_interval_ms = float(self.config["publish_interval_ms"])
        if self.detection_interval_ms <= 0 or self.publish_interval_ms <= 0:
            raise ValueError(
                "Scheduler intervals must be positive "
                f"(detection={self.detection_interval_ms}, publish={self.publish_interval_ms})"
            )
        self.audit_frames = bool(self.config["audit_frames"])

        self.model = model
        self.frame_source = frame_source
        self.sink = sink
        self.clock = clock or IntervalClock(float(self.config["tick_hz"]))
        self.analyzer = analyzer or ExpressionAnalyzer()
        self.logger = logger or get_logger(self.config["log_dir"])

        # Loop state
        self.state = SchedulerState.IDLE
        self.last_analysis_ms = float("-inf")
        self.last_publish_ms = float("-inf")
        self.latched: Optional[DetectionResult] = None

        self._in_flight = threading.Lock()
        self._state_lock = threading.Lock()
        self._warmed_up = False
        self._thread: Optional[threading.Thread] = None
        # One stop token per activation; set while IDLE
        self._stop_event = threading.Event()
        self._stop_event.set()

        self._stats = {
            "ticks": 0,
            "detections": 0,
            "failures": 0,
            "publishes": 0,
            "skipped_in_flight": 0,
        }

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self.state is SchedulerState.RUNNING

    def start(self, threaded: bool = True) -> None:
        """IDLE -> RUNNING. Warms the model up on first activation.

        Args:
            threaded: Spawn the tick loop on a daemon thread. With False the
                      caller drives the loop via run() or tick().

        Raises:
            Whatever model.warm_up() raises; the scheduler then stays IDLE.
        """
        with self._state_lock:
            if self.running:
                return
            self._warm_up()
            self._stop_event = threading.Event()
            self.state = SchedulerState.RUNNING
            self.logger.log({"event": "scheduler_started", "model": self.model.name,
                             "detection_interval_ms": self.detection_interval_ms,
                             "publish_interval_ms": self.publish_interval_ms})
            if threaded:
                self._thread = threading.Thread(
                    target=self.run, kwargs={"stop_event": self._stop_event},
                    name="LookieScheduler", daemon=True,
                )
                self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        """RUNNING -> IDLE. Stops future ticks; an in-flight detect() finishes on its own."""
        with self._state_lock:
            if not self.running:
                return
            self.state = SchedulerState.IDLE
            self._stop_event.set()
            thread = self._thread
            self._thread = None

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                _log.warning("Scheduler thread still inside a detection call after stop()")
        self.logger.log({"event": "scheduler_stopped", "stats": self.get_stats()})

    def _warm_up(self) -> None:
        if self._warmed_up:
            return
        t0 = time.monotonic()
        self.model.warm_up()
        self._warmed_up = True
        self.logger.log({"event": "model_warm_up", "model": self.model.name,
                         "duration_ms": round((time.monotonic() - t0) * 1000, 1)})

    # ── Loop ──────────────────────────────────────────────────

    def run(self, max_ticks: Optional[int] = None,
            stop_event: Optional[threading.Event] = None) -> int:
        """Tick loop: wait for the clock, tick, repeat until stopped.

        Args:
            max_ticks: Stop after this many ticks (None = until stop()).
            stop_event: Stop token of the activation this loop belongs to.
                        Defaults to the current activation. A loop whose
                        token was set by stop() exits even if the scheduler
                        has been started again meanwhile.

        Returns:
            Number of ticks processed.
        """
        if stop_event is None:
            stop_event = self._stop_event
        ticks = 0
        while not stop_event.is_set() and (max_ticks is None or ticks < max_ticks):
            now_ms = self.clock.wait_next()
            if stop_event.is_set():
                break
            try:
                self._tick(now_ms, stop_event)
            except Exception as e:
                self.logger.error(f"Scheduler tick error: {e}", exception=e, exc_info=True)
            ticks += 1
        return ticks

    def tick(self, now_ms: float) -> bool:
        """One scheduler step. Returns True when a result was published."""
        return self._tick(now_ms, self._stop_event)

    def _tick(self, now_ms: float, stop_event: threading.Event) -> bool:
        if stop_event.is_set():
            return False
        self._stats["ticks"] += 1

        if now_ms - self.last_analysis_ms >= self.detection_interval_ms:
            # Advanced before the attempt so failures do not retry every tick
            self.last_analysis_ms = now_ms
            self._detect_and_latch(now_ms)

        # stop() during detection: keep the latch, publish nothing
        if stop_event.is_set():
            return False
        return self._maybe_publish(now_ms)

    def _detect_and_latch(self, now_ms: float) -> None:
        if not self._in_flight.acquire(blocking=False):
            self._stats["skipped_in_flight"] += 1
            return
        try:
            try:
                frame = self.frame_source()
                if frame is None:
                    raise DetectionError("no frame available")
                sample = self.model.detect(frame)
                result = self.analyzer.analyze(sample, now_ms)
            except Exception as e:
                self._stats["failures"] += 1
                _log.debug("Detection attempt skipped at %.1f ms: %s", now_ms, e)
                return

            if (self.latched is not None and self.latched.blink_detected
                    and not result.blink_detected):
                result = replace(result, blink_detected=True)
            self.latched = result
            self._stats["detections"] += 1
        finally:
            self._in_flight.release()

    def _maybe_publish(self, now_ms: float) -> bool:
        published = self.latched
        if published is None or now_ms - self.last_publish_ms < self.publish_interval_ms:
            return False
        self.last_publish_ms = now_ms

        # The same blink must not be announced twice
        if published.blink_detected:
            self.latched = replace(published, blink_detected=False)

        self._stats["publishes"] += 1
        try:
            self.sink(published)
        except Exception as e:
            self.logger.error(f"Result sink failed: {e}", exception=e)

        if self.audit_frames:
            self.logger.log_result({"published_at_ms": now_ms, "result": published.to_dict()})
        return True

    # ── Introspection ─────────────────────────────────────────

    def get_stats(self) -> dict:
        stats = dict(self._stats)
        stats["state"] = self.state.value
        stats["in_flight"] = self._in_flight.locked()
        return stats
