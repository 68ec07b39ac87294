"""
LookieThere - Shared Result Types
==================================
Data carried between the expression model, the analyzer and the
scheduler.

  - RawSample: one model output (68 landmarks + raw class confidences)
  - ExpressionScore: a single {name, confidence} entry
  - DetectionResult: the immutable per-sample analyzer output
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Mapping, Optional, Tuple

import numpy as np

# Raw classes in the order the expression model reports them
RAW_EXPRESSIONS: Tuple[str, ...] = (
    "neutral",
    "happy",
    "sad",
    "angry",
    "fearful",
    "disgusted",
    "surprised",
)

# Synthesized from geometry + raw classes
COMPOSITE_EXPRESSIONS: Tuple[str, ...] = ("laughing", "sleeping")

ALL_EXPRESSIONS: Tuple[str, ...] = RAW_EXPRESSIONS + COMPOSITE_EXPRESSIONS

NUM_LANDMARKS = 68


@dataclass(frozen=True)
class ExpressionScore:
    """A single detected expression with its confidence score."""
    name: str
    confidence: float


@dataclass(frozen=True)
class RawSample:
    """One detection attempt from the expression model.

    Attributes:
        face_found: False means no face in the frame; other fields are ignored.
        landmarks: (68, 2) float array of pixel (x, y) points, iBUG ordering.
        raw_expressions: Confidence per raw class in [0, 1]. Normalized on
            construction to exactly RAW_EXPRESSIONS (missing classes read 0.0).
    """
    face_found: bool
    landmarks: np.ndarray = field(default_factory=lambda: np.empty((0, 2), dtype=np.float32))
    raw_expressions: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.face_found:
            return

        landmarks = np.asarray(self.landmarks, dtype=np.float64)
        if landmarks.shape != (NUM_LANDMARKS, 2):
            raise ValueError(
                f"RawSample landmarks must be ({NUM_LANDMARKS}, 2), got {landmarks.shape}"
            )
        # frozen dataclass: normalized fields go through object.__setattr__
        object.__setattr__(self, "landmarks", landmarks)
        object.__setattr__(self, "raw_expressions", {
            name: float(self.raw_expressions.get(name, 0.0))
            for name in RAW_EXPRESSIONS
        })

    @classmethod
    def no_face(cls) -> "RawSample":
        return cls(face_found=False)


@dataclass(frozen=True)
class DetectionResult:
    """The full detection result passed to the consumer each cycle.

    `all` is sorted by confidence (descending, stable) and includes the
    composite classes; `dominant` is its first entry.
    """
    dominant: ExpressionScore
    all: Tuple[ExpressionScore, ...]
    eyes_closed: bool
    eyebrows_raised: bool
    mouth_open: bool
    blink_detected: bool
    face_detected: bool
    timestamp_ms: float

    @classmethod
    def no_face(cls, timestamp_ms: float) -> "DetectionResult":
        return cls(
            dominant=ExpressionScore("neutral", 0.0),
            all=(),
            eyes_closed=False,
            eyebrows_raised=False,
            mouth_open=False,
            blink_detected=False,
            face_detected=False,
            timestamp_ms=timestamp_ms,
        )

    def score(self, name: str) -> Optional[float]:
        """Confidence for `name`, or None when absent."""
        for entry in self.all:
            if entry.name == name:
                return entry.confidence
        return None

    def to_dict(self) -> dict:
        return asdict(self)
