"""
LookieThere - Structured Audit Logger
======================================
Writes scheduler lifecycle events and published results as JSONL
(one JSON object per line) for post-session analysis.

Key Features:
  - JSONL format: {"timestamp", "level", "event", "data"}
  - Thread-safe (scheduler thread + caller thread both log)
  - Levels: SYSTEM, AUDIT, ERROR
  - NumPy scalars / arrays serialized transparently
"""

import json
import logging
import os
import sys
import threading
import time
from typing import Any, Dict, Optional

import numpy as np

_log = logging.getLogger("LookieLogger")


class LookieJSONEncoder(json.JSONEncoder):
    """Handles NumPy types for JSON serialization."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        return super().default(obj)


class LookieLogger:
    """
    JSONL audit logger for LookieThere sessions.
    """

    def __init__(self, log_dir: str = "logs", filename: str = "lookie_audit.jsonl"):
        self.log_dir = log_dir
        os.makedirs(self.log_dir, exist_ok=True)

        self.log_path = os.path.join(self.log_dir, filename)
        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()

        self.log({
            "event": "system_startup",
            "python_version": sys.version,
            "platform": sys.platform
        }, level="SYSTEM")

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append log entry."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data
        }

        line = json.dumps(entry, cls=LookieJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()

    def log_result(self, result_data: Dict[str, Any]):
        """Helper for published-result logs."""
        self.log(result_data, level="AUDIT", event="result_published")

    def error(self, message: str, exception: Optional[BaseException] = None, **kwargs):
        """Log structured error with exception details."""
        _log.error(message, **kwargs)
        err_details = repr(exception) if exception else None
        self.log({"message": message, "exception": err_details}, level="ERROR", event="system_error")

    @property
    def closed(self) -> bool:
        return self._file.closed

    def close(self):
        """Clean shutdown."""
        if self._file.closed:
            return
        self.log({"message": "Logger shutting down"}, level="SYSTEM", event="system_shutdown")
        with self._lock:
            self._file.close()


_logger: Optional[LookieLogger] = None
_logger_lock = threading.Lock()


def get_logger(log_dir: str = "logs") -> LookieLogger:
    """Process-wide logger; reopened if a previous instance was closed."""
    global _logger
    with _logger_lock:
        if _logger is None or _logger.closed:
            _logger = LookieLogger(log_dir)
        return _logger
