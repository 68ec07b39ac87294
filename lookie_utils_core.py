"""
LookieThere - Shared Utility Module
====================================
Configuration, logging and the landmark geometry behind the
expression analyzer.

Contains:
  A) Config loading (config.yaml merged over DEFAULT_CONFIG)
  B) Eye / Mouth Aspect Ratio and brow-raise geometry (iBUG 68 points)
  C) EarHistory: 3-sample rolling mean of the eye aspect ratio
  D) BlinkStateMachine: timing-based blink detection

All geometry works in PIXEL space on (68, 2) landmark arrays.
Degenerate spans never raise: they return a safe reading
(eye open, mouth closed, brows not raised).
"""

from __future__ import annotations

import copy
import enum
import logging
import math
import os
from collections import deque
from typing import Optional, Sequence

import numpy as np
import yaml


# ===================================================================
# Configuration
# ===================================================================

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_config_path = os.path.join(_SCRIPT_DIR, "config.yaml")

DEFAULT_CONFIG: dict = {
    "analyzer": {
        "ear_closed_threshold": 0.28,
        "mar_open_threshold": 0.35,
        "brow_raise_threshold": 0.38,
        "ear_history_size": 3,
        "blink_min_ms": 80.0,
        "blink_max_ms": 600.0,
        "blink_cooldown_ms": 300.0,
    },
    "scheduler": {
        "detection_interval_ms": 33.0,
        "publish_interval_ms": 80.0,
        "tick_hz": 60.0,
        "audit_frames": False,
    },
    "model": {
        "landmarker_model": "models/face_landmarker.task",
        "classifier_model": "models/emotion-ferplus-8.onnx",
        "min_detection_confidence": 0.4,
    },
    "logging": {
        "log_dir": "logs",
        "level": "INFO",
    },
}


def load_config(path: Optional[str] = None) -> dict:
    """Load config.yaml and merge each section over DEFAULT_CONFIG.

    A missing file yields the defaults. Unknown sections are kept as-is.
    """
    target = path or _config_path
    config = copy.deepcopy(DEFAULT_CONFIG)
    if not os.path.exists(target):
        if path is not None:
            raise FileNotFoundError(f"Config file not found: {target}")
        return config

    with open(target, "r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f) or {}

    for section, values in loaded.items():
        if isinstance(values, dict) and isinstance(config.get(section), dict):
            config[section].update(values)
        else:
            config[section] = values
    return config


# ===================================================================
# Logging Setup
# ===================================================================

def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a configured logger for LookieThere modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "[%(asctime)s] %(name)-14s %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


# ===================================================================
# COMPONENT B: LANDMARK GEOMETRY
# ===================================================================
#
# iBUG 68-point indices (0-based):
#   36-41  left eye    (outer corner, upper x2, inner corner, lower x2)
#   42-47  right eye
#   17-21  left brow, 22-26 right brow
#   60-67  inner lip   (60/64 corners, 61-63 upper, 65-67 lower)

LEFT_EYE = list(range(36, 42))
RIGHT_EYE = list(range(42, 48))

# Brow / eye-lid pairs used for the brow-raise ratio
LEFT_BROW_PAIR = (19, 20)
LEFT_LID_PAIR = (37, 38)
RIGHT_BROW_PAIR = (23, 24)
RIGHT_LID_PAIR = (43, 44)
INNER_EYE_CORNERS = (39, 42)

# Inner-lip points for MAR: verticals 62-66, 63-65; horizontal 61-64
MOUTH_VERTICAL_1 = (62, 66)
MOUTH_VERTICAL_2 = (63, 65)
MOUTH_HORIZONTAL = (61, 64)


def _dist(a: Sequence[float], b: Sequence[float]) -> float:
    return math.hypot(float(a[0]) - float(b[0]), float(a[1]) - float(b[1]))


def compute_ear(eye_points: Sequence[Sequence[float]]) -> float:
    """Eye Aspect Ratio for one eye.

        EAR = (|p2-p6| + |p3-p5|) / (2 * |p1-p4|)

    Args:
        eye_points: 6 (x, y) points [outer, upper1, upper2, inner, lower2, lower1].

    Returns:
        EAR value. 1.0 (wide open) when the horizontal span is zero.
    """
    p1, p2, p3, p4, p5, p6 = eye_points[:6]
    horizontal = _dist(p1, p4)
    if horizontal == 0:
        return 1.0
    return (_dist(p2, p6) + _dist(p3, p5)) / (2.0 * horizontal)


def compute_average_ear(landmarks: np.ndarray) -> float:
    """Mean EAR of both eyes from a (68, 2) landmark array."""
    left = compute_ear(landmarks[LEFT_EYE])
    right = compute_ear(landmarks[RIGHT_EYE])
    return (left + right) / 2.0


def compute_mar(landmarks: np.ndarray) -> float:
    """Mouth Aspect Ratio over the inner lip. 0.0 when the mouth has no width."""
    horizontal = _dist(landmarks[MOUTH_HORIZONTAL[0]], landmarks[MOUTH_HORIZONTAL[1]])
    if horizontal == 0:
        return 0.0
    v1 = _dist(landmarks[MOUTH_VERTICAL_1[0]], landmarks[MOUTH_VERTICAL_1[1]])
    v2 = _dist(landmarks[MOUTH_VERTICAL_2[0]], landmarks[MOUTH_VERTICAL_2[1]])
    return (v1 + v2) / (2.0 * horizontal)


def compute_brow_raise_ratio(landmarks: np.ndarray) -> Optional[float]:
    """Brow-to-lid height normalized by inner eye-corner distance.

    Averages (eyeY - browY) / interEyeDistance over both sides. Image Y
    grows downward, so a raised brow gives a larger ratio.

    Returns:
        The ratio, or None when the inter-eye distance is zero.
    """
    eye_distance = abs(
        float(landmarks[INNER_EYE_CORNERS[0], 0]) - float(landmarks[INNER_EYE_CORNERS[1], 0])
    )
    if eye_distance == 0:
        return None

    def _mean_y(pair: tuple) -> float:
        return (float(landmarks[pair[0], 1]) + float(landmarks[pair[1], 1])) / 2.0

    left_ratio = (_mean_y(LEFT_LID_PAIR) - _mean_y(LEFT_BROW_PAIR)) / eye_distance
    right_ratio = (_mean_y(RIGHT_LID_PAIR) - _mean_y(RIGHT_BROW_PAIR)) / eye_distance
    return (left_ratio + right_ratio) / 2.0


def detect_eyebrow_raise(landmarks: np.ndarray, threshold: float = 0.38) -> bool:
    """True when the brow-raise ratio exceeds `threshold`."""
    ratio = compute_brow_raise_ratio(landmarks)
    if ratio is None:
        return False
    return ratio > threshold


# ===================================================================
# COMPONENT C: EAR ROLLING HISTORY
# ===================================================================

class EarHistory:
    """Fixed-capacity FIFO of EAR values with a running arithmetic mean.

    Single-frame EAR is noisy at webcam resolution; averaging the last
    few samples suppresses jitter for the eyes-closed flag. Blink timing
    does NOT read from here (the averaging delay hides fast blinks).
    """

    def __init__(self, size: int = 3):
        if size < 1:
            raise ValueError(f"EarHistory size must be >= 1, got {size}")
        self._values: deque = deque(maxlen=size)

    def push(self, value: float) -> float:
        """Append a raw EAR (evicting the oldest when full), return the mean."""
        self._values.append(float(value))
        return self.mean

    @property
    def mean(self) -> float:
        if not self._values:
            return 0.0
        return sum(self._values) / len(self._values)

    @property
    def capacity(self) -> int:
        return self._values.maxlen

    def __len__(self) -> int:
        return len(self._values)

    def values(self) -> list:
        return list(self._values)

    def reset(self) -> None:
        self._values.clear()


# ===================================================================
# COMPONENT D: BLINK STATE MACHINE
# ===================================================================

class BlinkState(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class BlinkStateMachine:
    """Blink detection from an instantaneous eyes-closed signal.

    A blink is OPEN -> CLOSED -> OPEN where the closure lasted strictly
    between `min_ms` and `max_ms`. Fires exactly once, on reopening.

    Suppressed:
      - re-firing within `cooldown_ms` of the last detected blink
      - closures held longer than `max_ms` (intentional eye close)
      - anything while the eyes are still closed

    Transition table:

    State  | closed=False                         | closed=True
    -------|--------------------------------------|-------------------------------
    OPEN   | stay OPEN                            | -> CLOSED, closed_since = now
    CLOSED | duration in (min,max): fire, -> OPEN | held > max_ms: -> OPEN
           | otherwise -> OPEN, no fire           | otherwise stay CLOSED
    """

    def __init__(
        self,
        min_ms: float = 80.0,
        max_ms: float = 600.0,
        cooldown_ms: float = 300.0,
    ):
        if not 0 <= min_ms < max_ms:
            raise ValueError(f"Blink window must satisfy 0 <= min < max, got ({min_ms}, {max_ms})")
        self.min_ms = min_ms
        self.max_ms = max_ms
        self.cooldown_ms = cooldown_ms

        self.state = BlinkState.OPEN
        self.closed_since_ms = 0.0
        # No cooldown before the first blink
        self.cooldown_until_ms = float("-inf")
        self.blink_count = 0

    def update(self, eyes_closed: bool, now_ms: float) -> bool:
        """Advance the machine by one sample. Returns True when a blink fires."""
        if now_ms - self.cooldown_until_ms < self.cooldown_ms:
            if not eyes_closed:
                self.state = BlinkState.OPEN
            return False

        if self.state is BlinkState.OPEN:
            if eyes_closed:
                self.state = BlinkState.CLOSED
                self.closed_since_ms = now_ms
            return False

        # CLOSED
        duration = now_ms - self.closed_since_ms
        if not eyes_closed:
            self.state = BlinkState.OPEN
            if self.min_ms < duration < self.max_ms:
                self.cooldown_until_ms = now_ms
                self.blink_count += 1
                return True
        elif duration > self.max_ms:
            self.state = BlinkState.OPEN
        return False

    def reset(self) -> None:
        self.state = BlinkState.OPEN
        self.closed_since_ms = 0.0
        self.cooldown_until_ms = float("-inf")
        self.blink_count = 0

    def get_summary(self) -> dict:
        return {
            "state": self.state.value,
            "closed_since_ms": self.closed_since_ms,
            "cooldown_until_ms": self.cooldown_until_ms,
            "blink_count": self.blink_count,
        }
