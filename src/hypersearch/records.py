"""
Job record stores with a single-field compare-and-swap.

``InMemoryRecordStore`` serves workers sharing one process (threads, tests).
``DiskRecordStore`` keeps one JSON document per job on disk so that worker
processes pointed at the same directory can coordinate.
"""

from __future__ import annotations

import fcntl
import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

logger = logging.getLogger(__name__)


class InMemoryRecordStore:
    """Thread-safe record store backed by a dict of job documents."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def get_field(self, job_id: str, field_name: str) -> Optional[str]:
        with self._lock:
            return self._records.get(job_id, {}).get(field_name)

    def set_field_if_equal(
        self,
        job_id: str,
        field_name: str,
        new_value: str,
        expected: Optional[str],
    ) -> bool:
        with self._lock:
            record = self._records.setdefault(job_id, {})
            if record.get(field_name) != expected:
                return False
            record[field_name] = new_value
            return True


class DiskRecordStore:
    """
    File-backed record store: ``<root_dir>/<job_id>.json`` holds the job's fields.

    Each compare-and-swap holds an exclusive ``flock`` on ``<job_id>.lock`` and
    publishes the new document with an atomic temp-file rename, so readers
    never see a partial write.
    """

    def __init__(self, root_dir: str) -> None:
        self.root_dir = Path(root_dir)
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def _record_path(self, job_id: str) -> Path:
        if not job_id or "/" in job_id or "\\" in job_id or ".." in job_id:
            raise ValueError(f"Invalid job id: {job_id!r}")
        return self.root_dir / f"{job_id}.json"

    @contextmanager
    def _job_lock(self, job_id: str) -> Iterator[None]:
        lock_path = self._record_path(job_id).with_suffix(".lock")
        with lock_path.open("a", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read_record(self, path: Path) -> Dict[str, str]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def get_field(self, job_id: str, field_name: str) -> Optional[str]:
        return self._read_record(self._record_path(job_id)).get(field_name)

    def set_field_if_equal(
        self,
        job_id: str,
        field_name: str,
        new_value: str,
        expected: Optional[str],
    ) -> bool:
        path = self._record_path(job_id)
        with self._job_lock(job_id):
            record = self._read_record(path)
            if record.get(field_name) != expected:
                logger.debug("Job %s: compare-and-swap on %s rejected", job_id, field_name)
                return False
            record[field_name] = new_value

            # Atomic write: write to temp file, then rename
            temp_path = path.with_suffix(".tmp")
            with temp_path.open("w", encoding="utf-8") as f:
                json.dump(record, f)
            temp_path.replace(path)
        return True

    def clear(self, job_id: str) -> None:
        """Remove a job's record (useful for tests)."""
        path = self._record_path(job_id)
        with self._job_lock(job_id):
            if path.exists():
                path.unlink()
