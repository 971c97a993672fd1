"""
In-memory progress for background ingestion jobs.

Records live only in this process. A finished or failed job is dropped after
PROGRESS_CLEANUP_SECONDS, so "not found" can mean either expired or unknown.
"""

import dataclasses
import os
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from kb_api.core.domain.knowledge_base import IngestionJob

PROGRESS_CLEANUP_SECONDS = float(os.environ.get("PROGRESS_CLEANUP_SECONDS", "300"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _percentage(progress: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, (progress * 100) // total)


class ProgressTracker:
    def __init__(
        self,
        cleanup_seconds: float = PROGRESS_CLEANUP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cleanup_seconds = cleanup_seconds
        self._clock = clock
        self._jobs: Dict[str, IngestionJob] = {}
        self._expires_at: Dict[str, float] = {}
        self._lock = threading.Lock()

    def init(self, job_id: str, total: int) -> None:
        with self._lock:
            self._sweep_expired()
            self._jobs[job_id] = IngestionJob(job_id=job_id, total=max(0, total), start_time=_utcnow())
            self._expires_at.pop(job_id, None)

    def update(self, job_id: str, progress: int, message: Optional[str] = None) -> None:
        with self._lock:
            job = self._live_job(job_id)
            if job is None or job.is_terminal:
                return
            job.progress = progress
            job.percentage = _percentage(progress, job.total)
            if message:
                job.message = message

    def complete(self, job_id: str, message: str = "Completed") -> None:
        with self._lock:
            job = self._live_job(job_id)
            if job is None or job.is_terminal:
                return
            job.progress = job.total
            job.percentage = 100
            job.status = "completed"
            job.message = message
            self._finish(job)

    def fail(self, job_id: str, error_message: str) -> None:
        with self._lock:
            job = self._live_job(job_id)
            if job is None or job.is_terminal:
                return
            job.status = "failed"
            job.message = error_message
            self._finish(job)

    def get(self, job_id: str) -> Optional[IngestionJob]:
        with self._lock:
            job = self._live_job(job_id)
            return dataclasses.replace(job) if job else None

    def exists(self, job_id: str) -> bool:
        with self._lock:
            return self._live_job(job_id) is not None

    def cleanup_expired(self) -> int:
        with self._lock:
            return self._sweep_expired()

    def _finish(self, job: IngestionJob) -> None:
        self._sweep_expired()
        job.end_time = _utcnow()
        self._expires_at[job.job_id] = self._clock() + self.cleanup_seconds

    def _sweep_expired(self) -> int:
        now = self._clock()
        expired = [job_id for job_id, deadline in self._expires_at.items() if deadline <= now]
        for job_id in expired:
            self._drop(job_id)
        return len(expired)

    def _live_job(self, job_id: str) -> Optional[IngestionJob]:
        deadline = self._expires_at.get(job_id)
        if deadline is not None and deadline <= self._clock():
            self._drop(job_id)
            return None
        return self._jobs.get(job_id)

    def _drop(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._expires_at.pop(job_id, None)


_tracker: Optional[ProgressTracker] = None
_tracker_lock = threading.Lock()


def get_progress_tracker() -> ProgressTracker:
    global _tracker
    if _tracker is None:
        with _tracker_lock:
            if _tracker is None:
                _tracker = ProgressTracker()
    return _tracker
