"""
Structured event logging for hypersearch workers.

Events are JSONL lines so downstream tooling can follow a search without
bespoke parsers. Writes are serialized with a lock because several worker
threads may share one logger.
"""

from __future__ import annotations

import atexit
import json
import threading
import time
from pathlib import Path
from typing import Any, Dict


class EventLogger:
    """Append-only JSONL logger with thread-safe writes."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._handle = self.path.open("a", encoding="utf-8", buffering=1)
        atexit.register(self.close)

    def close(self) -> None:
        with self._lock:
            if self._handle and not self._handle.closed:
                self._handle.flush()
                self._handle.close()

    def log(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Write a structured event."""
        record = {
            "ts": time.time(),
            "event": event_type,
            **payload,
        }
        with self._lock:
            self._handle.write(json.dumps(record, default=str) + "\n")
            self._handle.flush()


def build_logger(base_dir: str, name: str) -> EventLogger:
    """Create a logger under ``base_dir`` with a filename ``{name}.jsonl``."""
    Path(base_dir).mkdir(parents=True, exist_ok=True)
    path = Path(base_dir) / f"{name}.jsonl"
    return EventLogger(str(path))
