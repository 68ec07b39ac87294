"""
LookieThere - Expression Display Mapping
=========================================
Human-facing labels and emoji for every expression name, plus the
canonical display order. Used by the console launcher.
"""

from __future__ import annotations

from typing import Dict, NamedTuple, Tuple

from lookie_types import ALL_EXPRESSIONS, DetectionResult


class ExpressionDisplay(NamedTuple):
    label: str
    emoji: str


# Expressions always appear in this sequence
EXPRESSION_ORDER: Tuple[str, ...] = (
    "neutral",
    "happy",
    "laughing",
    "sad",
    "angry",
    "surprised",
    "fearful",
    "disgusted",
    "sleeping",
)

EXPRESSION_MAP: Dict[str, ExpressionDisplay] = {
    "neutral":   ExpressionDisplay("Neutral", "😐"),
    "happy":     ExpressionDisplay("Smiling", "😊"),
    "sad":       ExpressionDisplay("Frowning", "😢"),
    "angry":     ExpressionDisplay("Angry", "😠"),
    "fearful":   ExpressionDisplay("Fearful", "😨"),
    "disgusted": ExpressionDisplay("Disgusted", "🤢"),
    "surprised": ExpressionDisplay("Surprised", "😲"),
    "laughing":  ExpressionDisplay("Laughing", "😂"),
    "sleeping":  ExpressionDisplay("Sleeping", "😴"),
}

assert set(EXPRESSION_ORDER) == set(ALL_EXPRESSIONS) == set(EXPRESSION_MAP)

EYES_CLOSED_DISPLAY = ExpressionDisplay("Eyes Closed", "😴")
EYEBROWS_RAISED_DISPLAY = ExpressionDisplay("Eyebrows Raised", "🤨")
MOUTH_OPEN_DISPLAY = ExpressionDisplay("Mouth Open", "😮")
BLINK_DISPLAY = ExpressionDisplay("Blink", "😉")


def display_for(name: str) -> ExpressionDisplay:
    """Display entry for `name`; unknown names fall back to the raw name."""
    return EXPRESSION_MAP.get(name, ExpressionDisplay(name.title(), "❔"))


def format_result(result: DetectionResult) -> str:
    """One-line summary of a published result."""
    if not result.face_detected:
        return "No face detected"

    dominant = display_for(result.dominant.name)
    parts = [f"{dominant.emoji} {dominant.label} {result.dominant.confidence:.0%}"]
    for flag, display in (
        (result.eyes_closed, EYES_CLOSED_DISPLAY),
        (result.eyebrows_raised, EYEBROWS_RAISED_DISPLAY),
        (result.mouth_open, MOUTH_OPEN_DISPLAY),
        (result.blink_detected, BLINK_DISPLAY),
    ):
        if flag:
            parts.append(f"{display.emoji} {display.label}")
    return " | ".join(parts)
