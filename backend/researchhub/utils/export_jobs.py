"""In-memory background job store for study result exports.

Jobs run on daemon threads and are kept in memory only; finished jobs
are dropped after `ttl_seconds`, and the oldest finished jobs are
evicted once more than `max_jobs` are held.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from pathlib import Path
from datetime import datetime, timezone
from typing import Callable, Optional

logger = logging.getLogger("researchhub.exports")

ExportWorker = Callable[[int, str], dict]
FINAL_STATUSES = ("succeeded", "failed")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ExportJobStore:
    def __init__(self, max_jobs: int = 200, ttl_seconds: int = 24 * 3600):
        self._jobs: dict[str, dict] = {}
        self._finished_at: dict[str, float] = {}
        self._lock = threading.Lock()
        self.max_jobs = max_jobs
        self.ttl_seconds = ttl_seconds

    def submit(self, *, study_id: int, owner_id: int, export_format: str, request_id: str,
               worker: ExportWorker) -> dict:
        """Register a queued job and start `worker(study_id, export_format)` in the background."""
        self._expire_finished()
        job_id = uuid.uuid4().hex
        with self._lock:
            self._jobs[job_id] = {
                "job_id": job_id,
                "status": "queued",
                "study_id": study_id,
                "owner_id": owner_id,
                "format": export_format,
                "request_id": request_id,
                "created_at": _now_iso(),
                "started_at": None,
                "finished_at": None,
                "result": None,
                "error": None,
            }
            self._evict_overflow()
        logger.info("export job %s queued study=%s format=%s request_id=%s", job_id, study_id, export_format, request_id)
        threading.Thread(target=self._execute, args=(job_id, worker), daemon=True).start()
        return {"job_id": job_id, "status": "queued"}

    def get(self, job_id: str) -> Optional[dict]:
        self._expire_finished()
        with self._lock:
            job = self._jobs.get(job_id)
            return dict(job) if job else None

    def _update(self, job_id: str, **fields) -> Optional[dict]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            job.update(fields)
            if fields.get("status") in FINAL_STATUSES:
                job["finished_at"] = _now_iso()
                self._finished_at[job_id] = time.time()
            return dict(job)

    def _execute(self, job_id: str, worker: ExportWorker) -> None:
        job = self._update(job_id, status="running", started_at=_now_iso())
        if job is None:
            return
        try:
            result = worker(job["study_id"], job["format"])
        except Exception as exc:
            logger.exception("export job %s failed", job_id)
            self._update(job_id, status="failed", error=str(exc))
            return
        self._update(job_id, status="succeeded", result=result)
        logger.info("export job %s succeeded", job_id)

    def _evict_overflow(self) -> None:
        # caller holds the lock
        overflow = len(self._jobs) - self.max_jobs
        if overflow <= 0:
            return
        oldest_finished = sorted(self._finished_at, key=self._finished_at.get)[:overflow]
        for job_id in oldest_finished:
            self._discard(job_id)

    def _expire_finished(self) -> None:
        cutoff = time.time() - self.ttl_seconds
        with self._lock:
            for job_id in [j for j, ts in self._finished_at.items() if ts < cutoff]:
                self._discard(job_id)

    def _discard(self, job_id: str) -> None:
        # caller holds the lock; the exported file goes with its job
        job = self._jobs.pop(job_id, None)
        self._finished_at.pop(job_id, None)
        result = (job or {}).get("result") or {}
        if result.get("path"):
            Path(result["path"]).unlink(missing_ok=True)
