"""
LookieThere - Launcher
=======================
Runs the expression pipeline on a webcam (or video file) and prints
each published result to the console.

Usage:
  python start_lookie.py --source 0
  python start_lookie.py --source clip.mp4 --duration 20 --audit
"""

import argparse
import logging
import os
import sys
import threading
import time

import cv2

# Add root
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from lookie_analyzer import ExpressionAnalyzer
from lookie_expressions import format_result
from lookie_face_pipeline import MediaPipeExpressionModel
from lookie_logger import get_logger
from lookie_scheduler import FrameScheduler
from lookie_utils_core import load_config, setup_logger


def _make_frame_source(cap, end_of_stream=None):
    """Frame reader for the scheduler.

    With `end_of_stream` set (video files), a failed read marks the end of
    the file instead of a transient camera hiccup.
    """
    def read_frame():
        ok, frame = cap.read()
        if not ok:
            if end_of_stream is not None:
                end_of_stream.set()
            return None
        return frame
    return read_frame


def main():
    parser = argparse.ArgumentParser(description="LookieThere expression pipeline")
    parser.add_argument("--source", type=str, default="0", help="Camera ID (0, 1, etc.) or video file path")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--landmarker", type=str, default=None, help="MediaPipe FaceLandmarker .task file")
    parser.add_argument("--classifier", type=str, default=None, help="FER+ ONNX classifier")
    parser.add_argument("--audit", action="store_true", help="Log every published result to the JSONL audit")
    parser.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = until Ctrl+C)")
    args = parser.parse_args()

    config = load_config(args.config)
    if args.landmarker:
        config["model"]["landmarker_model"] = args.landmarker
    if args.classifier:
        config["model"]["classifier_model"] = args.classifier
    if args.audit:
        config["scheduler"]["audit_frames"] = True

    level = getattr(logging, str(config["logging"]["level"]).upper(), logging.INFO)
    log = setup_logger("LookieThere", level)
    for name in ("LookieScheduler", "LookieAnalyzer", "LookieFacePipeline"):
        setup_logger(name, level)

    is_camera = args.source.isdigit()
    source = int(args.source) if is_camera else args.source
    cap = cv2.VideoCapture(source)
    if not cap.isOpened():
        log.error("Could not open video source %r", args.source)
        return 1
    cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

    end_of_stream = threading.Event()
    audit = get_logger(config["logging"]["log_dir"])
    model = MediaPipeExpressionModel.from_config(config)
    scheduler = FrameScheduler(
        model=model,
        frame_source=_make_frame_source(cap, None if is_camera else end_of_stream),
        sink=lambda result: print(format_result(result), flush=True),
        analyzer=ExpressionAnalyzer(config["analyzer"]),
        config={**config["scheduler"], "log_dir": config["logging"]["log_dir"]},
        logger=audit,
    )

    print("=" * 60)
    print("  LookieThere - Starting...")
    print(f"  Source:     {args.source}")
    print(f"  Backend:    {model.name}")
    print(f"  Detection:  every {scheduler.detection_interval_ms:.0f} ms")
    print(f"  Publish:    every {scheduler.publish_interval_ms:.0f} ms")
    print("=" * 60)

    exit_code = 0
    try:
        scheduler.start()
        started = time.monotonic()
        while scheduler.running:
            if args.duration and time.monotonic() - started >= args.duration:
                break
            if end_of_stream.is_set():
                log.info("End of video source reached")
                break
            time.sleep(0.1)
    except KeyboardInterrupt:
        print("\n[LOOKIE] Interrupted by user.")
    except FileNotFoundError as e:
        log.error("%s", e)
        exit_code = 1
    finally:
        scheduler.stop()
        model.release()
        cap.release()
        log.info("Session stats: %s", scheduler.get_stats())
        audit.close()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
