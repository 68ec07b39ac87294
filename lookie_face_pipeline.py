"""
LookieThere - MediaPipe + ONNX Expression Backend
==================================================
Concrete ExpressionModel for webcam frames.

  - Landmarks: MediaPipe FaceLandmarker (478-point mesh, VIDEO mode),
    reduced to the iBUG 68-point layout in PIXEL coordinates
  - Expressions: FER+ ONNX classifier (64x64 grayscale face crop,
    8 logits) folded into the 7 raw classes; 'contempt' is added to
    'disgusted'

Only the largest face is reported. All heavy resources load in
warm_up(); detect() before warm_up() raises DetectionError.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Optional

import cv2
import numpy as np

from lookie_model import DetectionError, ExpressionModel
from lookie_types import RAW_EXPRESSIONS, RawSample
from lookie_utils_core import DEFAULT_CONFIG

_log = logging.getLogger("LookieFacePipeline")

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))

# ═══════════════════════════════════════════════════════════════
# MediaPipe 478 → iBUG 68 Landmark Mapping (0-based output order)
# ═══════════════════════════════════════════════════════════════

_MP_JAW = [127, 234, 93, 132, 58, 172, 136, 150, 152,
           379, 365, 397, 288, 361, 323, 454, 356]          # 0-16
_MP_BROW_A = [70, 63, 105, 66, 107]                          # 17-21
_MP_BROW_B = [336, 296, 334, 293, 300]                       # 22-26
_MP_NOSE_BRIDGE = [168, 197, 5, 4]                           # 27-30
_MP_NOSE_BOTTOM = [75, 97, 2, 326, 305]                      # 31-35
_MP_EYE_A = [33, 160, 158, 133, 153, 144]                    # 36-41
_MP_EYE_B = [362, 385, 387, 263, 373, 380]                   # 42-47
_MP_OUTER_LIP = [61, 39, 37, 0, 267, 269,
                 291, 405, 314, 17, 84, 181]                 # 48-59
_MP_INNER_LIP = [78, 82, 13, 312, 308, 317, 14, 87]          # 60-67

MP_478_TO_68 = np.array(
    _MP_JAW + _MP_BROW_A + _MP_BROW_B + _MP_NOSE_BRIDGE + _MP_NOSE_BOTTOM
    + _MP_EYE_A + _MP_EYE_B + _MP_OUTER_LIP + _MP_INNER_LIP,
    dtype=np.int64,
)

assert MP_478_TO_68.shape == (68,), (
    f"Landmark mapping must produce exactly 68 points, got {MP_478_TO_68.shape[0]}"
)

# FER+ output order
FERPLUS_CLASSES = (
    "neutral", "happiness", "surprise", "sadness",
    "anger", "disgust", "fear", "contempt",
)

_FERPLUS_TO_RAW = {
    "neutral": "neutral",
    "happiness": "happy",
    "surprise": "surprised",
    "sadness": "sad",
    "anger": "angry",
    "disgust": "disgusted",
    "fear": "fearful",
    "contempt": "disgusted",
}

_CLASSIFIER_INPUT_SIZE = 64
_CROP_MARGIN = 0.15


def convert_478_to_68(landmarks_478: np.ndarray, frame_width: int, frame_height: int) -> np.ndarray:
    """Normalized (478, 2+) MediaPipe mesh -> (68, 2) pixel landmarks."""
    if landmarks_478.shape[0] <= int(MP_478_TO_68.max()):
        raise DetectionError(
            f"Face mesh has {landmarks_478.shape[0]} points, need at least {int(MP_478_TO_68.max()) + 1}"
        )
    picked = landmarks_478[MP_478_TO_68, :2].astype(np.float64)
    picked[:, 0] *= frame_width
    picked[:, 1] *= frame_height
    return picked


def crop_face_for_classifier(frame: np.ndarray, landmarks_68: np.ndarray) -> np.ndarray:
    """Square grayscale crop around the landmarks as a (1, 1, 64, 64) float32 tensor."""
    h, w = frame.shape[:2]
    x_min, y_min = landmarks_68.min(axis=0)
    x_max, y_max = landmarks_68.max(axis=0)
    cx, cy = (x_min + x_max) / 2.0, (y_min + y_max) / 2.0
    half = max(x_max - x_min, y_max - y_min) * (1 + _CROP_MARGIN) / 2.0

    x1, y1 = max(0, int(cx - half)), max(0, int(cy - half))
    x2, y2 = min(w, int(cx + half)), min(h, int(cy + half))
    if x2 <= x1 or y2 <= y1:
        raise DetectionError("Face crop is empty")

    crop = frame[y1:y2, x1:x2]
    gray = cv2.cvtColor(crop, cv2.COLOR_BGR2GRAY) if crop.ndim == 3 else crop
    resized = cv2.resize(gray, (_CLASSIFIER_INPUT_SIZE, _CLASSIFIER_INPUT_SIZE))
    return resized.astype(np.float32)[np.newaxis, np.newaxis, :, :]


def ferplus_to_raw_expressions(logits: np.ndarray) -> dict:
    """Softmax over FER+ logits, folded into the 7 raw expression classes."""
    logits = np.asarray(logits, dtype=np.float64).reshape(-1)
    if logits.shape[0] != len(FERPLUS_CLASSES):
        raise DetectionError(f"Expected {len(FERPLUS_CLASSES)} classifier outputs, got {logits.shape[0]}")
    exp = np.exp(logits - logits.max())
    probs = exp / exp.sum()

    raw = {name: 0.0 for name in RAW_EXPRESSIONS}
    for fer_name, p in zip(FERPLUS_CLASSES, probs):
        raw[_FERPLUS_TO_RAW[fer_name]] += float(p)
    return raw


class MediaPipeExpressionModel(ExpressionModel):
    """FaceLandmarker landmarks + FER+ expression scores for BGR frames."""

    def __init__(
        self,
        landmarker_model: Optional[str] = None,
        classifier_model: Optional[str] = None,
        min_detection_confidence: Optional[float] = None,
    ) -> None:
        defaults = DEFAULT_CONFIG["model"]
        self._landmarker_path = self._resolve(landmarker_model or defaults["landmarker_model"])
        self._classifier_path = self._resolve(classifier_model or defaults["classifier_model"])
        self._min_confidence = (
            defaults["min_detection_confidence"]
            if min_detection_confidence is None else min_detection_confidence
        )

        self._landmarker = None
        self._session = None
        self._input_name: Optional[str] = None
        self._last_timestamp_ms = 0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: dict) -> "MediaPipeExpressionModel":
        model_cfg = {**DEFAULT_CONFIG["model"], **(config.get("model") or {})}
        return cls(
            landmarker_model=model_cfg["landmarker_model"],
            classifier_model=model_cfg["classifier_model"],
            min_detection_confidence=model_cfg["min_detection_confidence"],
        )

    @staticmethod
    def _resolve(path: str) -> str:
        return path if os.path.isabs(path) else os.path.join(_SCRIPT_DIR, path)

    @property
    def name(self) -> str:
        return "mediapipe-ferplus"

    @property
    def ready(self) -> bool:
        return self._landmarker is not None and self._session is not None

    # ── Initialization ────────────────────────────────────────

    def warm_up(self) -> None:
        """Load FaceLandmarker and the ONNX classifier (once)."""
        with self._lock:
            if self.ready:
                return
            for path in (self._landmarker_path, self._classifier_path):
                if not os.path.exists(path):
                    raise FileNotFoundError(f"Model file not found: {path}")

            self._init_landmarker()
            self._init_classifier()
            _log.info("MediaPipeExpressionModel ready (landmarker=%s, classifier=%s)",
                      os.path.basename(self._landmarker_path),
                      os.path.basename(self._classifier_path))

    def _init_landmarker(self) -> None:
        from mediapipe.tasks import python
        from mediapipe.tasks.python import vision

        base_options = python.BaseOptions(
            model_asset_path=self._landmarker_path,
            delegate=python.BaseOptions.Delegate.CPU,
        )
        options = vision.FaceLandmarkerOptions(
            base_options=base_options,
            running_mode=vision.RunningMode.VIDEO,
            num_faces=1,
            min_face_detection_confidence=self._min_confidence,
            min_face_presence_confidence=self._min_confidence,
            min_tracking_confidence=0.5,
        )
        self._landmarker = vision.FaceLandmarker.create_from_options(options)

    def _init_classifier(self) -> None:
        import onnxruntime as ort

        self._session = ort.InferenceSession(
            self._classifier_path, providers=["CPUExecutionProvider"]
        )
        self._input_name = self._session.get_inputs()[0].name

    # ── Detection ─────────────────────────────────────────────

    def detect(self, frame: Any) -> RawSample:
        if not self.ready:
            raise DetectionError("Model not warmed up")
        if not isinstance(frame, np.ndarray) or frame.ndim != 3 or frame.shape[2] != 3:
            raise DetectionError("Frame must be a BGR (H, W, 3) array")

        h, w = frame.shape[:2]
        landmarks_478 = self._run_landmarker(frame)
        if landmarks_478 is None:
            return RawSample.no_face()

        landmarks_68 = convert_478_to_68(landmarks_478, w, h)
        crop = crop_face_for_classifier(frame, landmarks_68)
        logits = self._session.run(None, {self._input_name: crop})[0]

        return RawSample(
            face_found=True,
            landmarks=landmarks_68,
            raw_expressions=ferplus_to_raw_expressions(logits),
        )

    def _run_landmarker(self, frame: np.ndarray) -> Optional[np.ndarray]:
        import mediapipe as mp

        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)

        # VIDEO mode requires strictly increasing timestamps
        timestamp_ms = max(int(time.monotonic() * 1000), self._last_timestamp_ms + 1)
        self._last_timestamp_ms = timestamp_ms

        result = self._landmarker.detect_for_video(mp_image, timestamp_ms)
        if not result or not result.face_landmarks:
            return None
        return np.array([[lm.x, lm.y] for lm in result.face_landmarks[0]], dtype=np.float32)

    def release(self) -> None:
        """Release detector resources."""
        with self._lock:
            if self._landmarker is not None:
                self._landmarker.close()
                self._landmarker = None
            self._session = None
        _log.info("MediaPipeExpressionModel released")

    def __enter__(self) -> "MediaPipeExpressionModel":
        return self

    def __exit__(self, *args) -> None:
        self.release()
