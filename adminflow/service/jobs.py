"""Background execution of long-running migration and sync operations."""

from __future__ import annotations

import concurrent.futures
import threading
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from adminflow.logging import get_logger
from adminflow.service.errors import ConflictError, NotFoundError, ServiceError
from adminflow.storage.models import Job, utcnow

logger = get_logger(__name__)

ProgressReporter = Callable[[float], None]
StopCheck = Callable[[], bool]
JobFunction = Callable[[ProgressReporter, StopCheck], Dict[str, Any]]


class JobRunner:
    """Runs job functions on a bounded thread pool and tracks their state.

    At most one job per ``kind`` is queued or running at a time. Cancellation
    is cooperative: the job function sees ``should_stop()`` turn true and
    decides where to stop.
    """

    DEFAULT_WORKERS = 2
    MAX_WORKERS = 8
    MAX_FINISHED = 100

    def __init__(self, workers: int = DEFAULT_WORKERS) -> None:
        workers = min(max(1, workers), self.MAX_WORKERS)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="adminflow-job"
        )
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._stop_flags: Dict[str, threading.Event] = {}
        self._futures: Dict[str, concurrent.futures.Future] = {}
        self._shutdown = False

    def submit(self, kind: str, fn: JobFunction) -> Job:
        with self._lock:
            if self._shutdown:
                raise ConflictError("job runner is shutting down", detail={"kind": kind})
            for job in self._jobs.values():
                if job.kind == kind and not job.done:
                    raise ConflictError(
                        f"a {kind} job is already running",
                        detail={"jobId": job.id, "kind": kind},
                    )
            job = Job(id=uuid.uuid4().hex, kind=kind)
            stop = threading.Event()
            self._jobs[job.id] = job
            self._stop_flags[job.id] = stop
            self._prune_locked()
            self._futures[job.id] = self._executor.submit(self._run, job.id, fn, stop)
        logger.info("job_submitted", job_id=job.id, kind=kind)
        return replace(job)

    def _set(self, job_id: str, **changes: Any) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            for key, value in changes.items():
                setattr(job, key, value)

    def _run(self, job_id: str, fn: JobFunction, stop: threading.Event) -> None:
        self._set(job_id, status="running")

        def report(progress: float) -> None:
            self._set(job_id, progress=min(max(float(progress), 0.0), 1.0))

        try:
            result = fn(report, stop.is_set)
        except ServiceError as exc:
            logger.warning("job_failed", job_id=job_id, error=exc.message, detail=exc.detail)
            self._set(job_id, status="failed", error=exc.message, finished_at=utcnow())
        except Exception as exc:
            logger.error("job_crashed", job_id=job_id, error_type=type(exc).__name__, error=str(exc))
            self._set(job_id, status="failed", error=str(exc) or type(exc).__name__, finished_at=utcnow())
        else:
            changes: Dict[str, Any] = {"status": "completed", "result": result, "finished_at": utcnow()}
            if not stop.is_set():
                changes["progress"] = 1.0
            self._set(job_id, **changes)
            logger.info("job_completed", job_id=job_id, cancelled=stop.is_set())

    def _prune_locked(self) -> None:
        finished = [job for job in self._jobs.values() if job.done]
        excess = len(finished) - self.MAX_FINISHED
        if excess <= 0:
            return
        finished.sort(key=lambda job: job.created_at)
        for job in finished[:excess]:
            self._jobs.pop(job.id, None)
            self._stop_flags.pop(job.id, None)
            self._futures.pop(job.id, None)

    def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError("job not found", detail={"jobId": job_id})
            return replace(job)

    def list(self, kind: Optional[str] = None) -> List[Job]:
        with self._lock:
            jobs = [replace(j) for j in self._jobs.values() if kind is None or j.kind == kind]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    def cancel(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError("job not found", detail={"jobId": job_id})
            if not job.done:
                self._stop_flags[job_id].set()
        logger.info("job_cancel_requested", job_id=job_id)
        return self.get(job_id)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            concurrent.futures.wait([future], timeout=timeout)
        return self.get(job_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
            if not wait:
                for stop in self._stop_flags.values():
                    stop.set()
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("job_runner_shutdown", wait=wait)
