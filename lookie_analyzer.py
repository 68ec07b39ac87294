"""
LookieThere - Expression Analyzer
==================================
Turns one RawSample (68 landmarks + 7 raw class confidences) into a
DetectionResult.

Pipeline per sample:
  1. Raw EAR (mean of both eyes) -> blink state machine
  2. Same EAR -> 3-sample rolling mean -> eyes_closed flag
  3. MAR -> mouth_open flag
  4. Brow-raise ratio -> eyebrows_raised flag
  5. Composite classes (laughing, sleeping) + surprise correction
  6. Stable sort, descending by confidence

The rolling EAR history and blink machine are owned by the analyzer
instance. One analyzer must be driven from a single thread; samples
arrive in time order.
"""

from __future__ import annotations

import logging
from typing import List, Mapping, Optional

from lookie_types import DetectionResult, ExpressionScore, RawSample
from lookie_utils_core import (
    DEFAULT_CONFIG,
    BlinkStateMachine,
    EarHistory,
    compute_average_ear,
    compute_mar,
    detect_eyebrow_raise,
)

_log = logging.getLogger("LookieAnalyzer")

# Surprise correction multipliers
SURPRISE_MOUTH_ONLY = 0.25
SURPRISE_NO_CUES = 0.6

# Laughing / sleeping composite constants
LAUGH_HAPPY_MIN = 0.5
LAUGH_BOOST = 1.1
LAUGH_STRONG_HAPPY_MIN = 0.7
LAUGH_PARTIAL_MAR_MIN = 0.25
LAUGH_PARTIAL_SCALE = 0.8
SLEEP_SAD_WEIGHT = 0.5
SLEEP_BOOST = 1.1


def infer_laughing(happy: float, mouth_open: bool, mar: float) -> float:
    """Laughing = strong happy with an open (or partly open) mouth."""
    if mouth_open and happy > LAUGH_HAPPY_MIN:
        return min(happy * LAUGH_BOOST, 1.0)
    if happy > LAUGH_STRONG_HAPPY_MIN and mar > LAUGH_PARTIAL_MAR_MIN:
        return happy * LAUGH_PARTIAL_SCALE
    return 0.0


def infer_sleeping(neutral: float, sad: float, eyes_closed: bool) -> float:
    """Sleeping = eyes closed with a calm (neutral / mildly sad) face."""
    if not eyes_closed:
        return 0.0
    return min((neutral + sad * SLEEP_SAD_WEIGHT) * SLEEP_BOOST, 1.0)


def correct_surprise(surprised: float, mouth_open: bool, eyebrows_raised: bool) -> float:
    """Penalize 'surprised' when the geometric cues do not back it up.

    The expression model reads any open mouth as surprise. Genuine
    surprise raises the brows; an open mouth alone is usually talking
    or yawning.
    """
    if eyebrows_raised:
        return surprised
    if mouth_open:
        return surprised * SURPRISE_MOUTH_ONLY
    return surprised * SURPRISE_NO_CUES


def rank_expressions(
    raw_expressions: Mapping[str, float],
    corrected_surprised: float,
    laughing: float,
    sleeping: float,
) -> List[ExpressionScore]:
    """Build the final expression list, stable-sorted by confidence (desc)."""
    raw_sorted = sorted(
        (ExpressionScore(name, float(conf)) for name, conf in raw_expressions.items()),
        key=lambda e: e.confidence,
        reverse=True,
    )
    entries = [
        ExpressionScore(e.name, corrected_surprised) if e.name == "surprised" else e
        for e in raw_sorted
    ]
    entries.append(ExpressionScore("laughing", laughing))
    entries.append(ExpressionScore("sleeping", sleeping))
    # sorted() is stable; reverse=True keeps insertion order among ties
    return sorted(entries, key=lambda e: e.confidence, reverse=True)


class ExpressionAnalyzer:
    """Stateful per-session analyzer (rolling EAR + blink machine).

    Usage:
        analyzer = ExpressionAnalyzer(config["analyzer"])
        result = analyzer.analyze(sample, now_ms)
    """

    def __init__(self, config: Optional[dict] = None):
        self.config = {**DEFAULT_CONFIG["analyzer"], **(config or {})}

        self.ear_closed_threshold = float(self.config["ear_closed_threshold"])
        self.mar_open_threshold = float(self.config["mar_open_threshold"])
        self.brow_raise_threshold = float(self.config["brow_raise_threshold"])

        self.ear_history = EarHistory(int(self.config["ear_history_size"]))
        self.blink = BlinkStateMachine(
            min_ms=float(self.config["blink_min_ms"]),
            max_ms=float(self.config["blink_max_ms"]),
            cooldown_ms=float(self.config["blink_cooldown_ms"]),
        )

        self.samples_analyzed = 0
        self.last_ear: Optional[float] = None
        self.last_mar: Optional[float] = None

    def analyze(self, sample: RawSample, now_ms: float) -> DetectionResult:
        """Analyze one sample.

        A no-face sample returns the no-face result and leaves the EAR
        history and blink machine untouched: a missing face says nothing
        about whether the eyes are closed.
        """
        if not sample.face_found:
            return DetectionResult.no_face(now_ms)

        landmarks = sample.landmarks
        raw = sample.raw_expressions

        # Eyes: raw EAR drives blink timing, smoothed EAR drives eyes_closed
        raw_ear = compute_average_ear(landmarks)
        smoothed_ear = self.ear_history.push(raw_ear)
        eyes_closed = smoothed_ear < self.ear_closed_threshold
        blink_detected = self.blink.update(raw_ear < self.ear_closed_threshold, now_ms)

        # Mouth + brows
        mar = compute_mar(landmarks)
        mouth_open = mar > self.mar_open_threshold
        eyebrows_raised = detect_eyebrow_raise(landmarks, self.brow_raise_threshold)

        laughing = infer_laughing(raw.get("happy", 0.0), mouth_open, mar)
        sleeping = infer_sleeping(raw.get("neutral", 0.0), raw.get("sad", 0.0), eyes_closed)
        surprised = correct_surprise(raw.get("surprised", 0.0), mouth_open, eyebrows_raised)

        ranked = rank_expressions(raw, surprised, laughing, sleeping)

        self.samples_analyzed += 1
        self.last_ear = raw_ear
        self.last_mar = mar
        if blink_detected:
            _log.debug("Blink detected at %.1f ms (count=%d)", now_ms, self.blink.blink_count)

        return DetectionResult(
            dominant=ranked[0],
            all=tuple(ranked),
            eyes_closed=eyes_closed,
            eyebrows_raised=eyebrows_raised,
            mouth_open=mouth_open,
            blink_detected=blink_detected,
            face_detected=True,
            timestamp_ms=now_ms,
        )

    def reset(self) -> None:
        """Clear rolling state (EAR history + blink machine)."""
        self.ear_history.reset()
        self.blink.reset()
        self.samples_analyzed = 0
        self.last_ear = None
        self.last_mar = None

    def get_summary(self) -> dict:
        return {
            "samples_analyzed": self.samples_analyzed,
            "ear_history": self.ear_history.values(),
            "last_ear": self.last_ear,
            "last_mar": self.last_mar,
            "blink": self.blink.get_summary(),
        }
