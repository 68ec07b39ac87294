"""
LookieThere - Expression Model Interface
=========================================
Defines the `ExpressionModel` base class: the boundary between the
scheduler and whatever produces landmarks + raw expression scores.

Scheduler Integration:
  - FrameScheduler.start() calls warm_up() once
  - Each detection tick, detect(frame) returns a RawSample
  - Any exception from detect() means "skip this tick"
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from lookie_types import RawSample


class DetectionError(RuntimeError):
    """Transient detection failure (model not ready, frame not decodable)."""
    pass


class ExpressionModel(ABC):
    """
    Abstract Base Class for landmark + expression backends.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for the backend (e.g., 'mediapipe-ferplus')."""
        pass

    def warm_up(self) -> None:
        """Load weights / allocate sessions. Must be safe to call repeatedly."""
        pass

    @abstractmethod
    def detect(self, frame: Any) -> RawSample:
        """
        Run landmark + expression detection on one frame.

        Args:
            frame: Caller-supplied frame handle (BGR numpy array for the
                   bundled backends).

        Returns:
            RawSample with face_found=False when no face is visible.

        Raises:
            DetectionError (or any exception) on transient failure.
        """
        pass

    def release(self):
        """Optional cleanup logic on shutdown."""
        pass


class ReplayModel(ExpressionModel):
    """Plays back a recorded sequence of samples, one per detect() call.

    Items may be RawSample instances or exceptions (raised in place).
    When the sequence runs out it restarts (`loop=True`) or keeps
    returning the last item. An empty recording raises DetectionError.
    """

    def __init__(self, samples: Iterable, loop: bool = False):
        self._samples = list(samples)
        self._loop = loop
        self._index = 0
        self._lock = threading.Lock()
        self.warm_up_calls = 0
        self.detect_calls = 0

    @property
    def name(self) -> str:
        return "replay"

    def warm_up(self) -> None:
        self.warm_up_calls += 1

    def detect(self, frame: Any) -> RawSample:
        with self._lock:
            self.detect_calls += 1
            item = self._next_item()
        if isinstance(item, BaseException):
            raise item
        return item

    def _next_item(self) -> Optional[Any]:
        if not self._samples:
            raise DetectionError("ReplayModel has no recorded samples")
        if self._index >= len(self._samples):
            if self._loop:
                self._index = 0
            else:
                return self._samples[-1]
        item = self._samples[self._index]
        self._index += 1
        return item
