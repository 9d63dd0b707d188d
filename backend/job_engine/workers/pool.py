"""In-process worker pool used when ``dispatch_mode`` is ``embedded``."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from job_engine.core.exceptions import DispatchError
from job_engine.core.status import JobStatus
from job_engine.services.job_store import JobFilter, JobStore
from job_engine.services.progress_publisher import ProgressPublisher
from job_engine.workers.runner import JobRunner
from job_engine.workers.sweeps import RecoveryReport, recovery_sweep, retention_sweep

logger = logging.getLogger(__name__)


class WorkerPool:
    """Bounded set of job executions inside this process.

    A job id is executed by at most one thread at a time; submitting a job
    that is already in flight is a no-op. The background loop picks up
    pending jobs every ``poll_interval`` seconds and runs the retention
    sweep every ``retention_sweep_interval`` seconds.
    """

    def __init__(
        self,
        store: JobStore,
        runner: JobRunner,
        publisher: ProgressPublisher,
        *,
        concurrency: int = 3,
        poll_interval: float = 2.0,
        retention_days: int = 30,
        retention_sweep_interval: float = 3600.0,
    ):
        self._store = store
        self._runner = runner
        self._publisher = publisher
        self._concurrency = concurrency
        self._poll_interval = poll_interval
        self._retention_days = retention_days
        self._retention_interval = retention_sweep_interval

        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="job-worker")
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_retention = 0.0
        self._closed = False

    # ------------------------------------------------------------- execution

    def submit(self, job_id: str, resume: bool = False) -> bool:
        """Queue ``job_id`` for execution; False if it is already in flight."""
        with self._lock:
            if self._closed:
                raise DispatchError("Worker pool is shut down")
            if job_id in self._in_flight:
                return False
            self._in_flight.add(job_id)
        try:
            self._executor.submit(self._run, job_id, resume)
        except RuntimeError as e:
            with self._lock:
                self._in_flight.discard(job_id)
            raise DispatchError(f"Could not queue job {job_id}: {e}") from e
        logger.debug(f"Queued job {job_id} (resume={resume})")
        return True

    def _run(self, job_id: str, resume: bool) -> None:
        try:
            self._runner.run(job_id, resume=resume)
        except Exception:
            # Top of the worker thread; the job stays running for recovery
            logger.error(f"Worker crashed while running job {job_id}", exc_info=True)
        finally:
            with self._lock:
                self._in_flight.discard(job_id)

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._in_flight

    def free_slots(self) -> int:
        with self._lock:
            return max(self._concurrency - len(self._in_flight), 0)

    def dispatch_pending(self) -> int:
        """Start the oldest pending jobs that fit in the free slots."""
        slots = self.free_slots()
        if slots <= 0:
            return 0
        with self._lock:
            busy = len(self._in_flight)
        pending = self._store.list(
            JobFilter(status=JobStatus.PENDING.value, limit=slots + busy, oldest_first=True)
        )
        started = 0
        for job in pending:
            if started >= slots:
                break
            if self.submit(job.id):
                started += 1
        return started

    # ----------------------------------------------------------------- sweeps

    def recover(self) -> RecoveryReport:
        return recovery_sweep(
            self._store,
            self._publisher,
            resume=lambda job_id: self.submit(job_id, resume=True),
            redispatch=self.submit,
            skip=self.is_running,
        )

    def sweep_expired(self) -> int:
        self._last_retention = time.monotonic()
        return retention_sweep(self._store, self._retention_days)

    # -------------------------------------------------------------- lifecycle

    def start(self, recover: bool = True) -> None:
        if self._thread is not None:
            return
        if recover:
            self.recover()
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="job-pool-poller", daemon=True)
        self._thread.start()
        logger.info(f"Worker pool started (concurrency={self._concurrency})")

    def _loop(self) -> None:
        while not self._stop.wait(self._poll_interval):
            try:
                self.dispatch_pending()
                if time.monotonic() - self._last_retention >= self._retention_interval:
                    self.sweep_expired()
            except Exception:
                logger.error("Worker pool poll failed", exc_info=True)

    def stop(self, wait: bool = True) -> None:
        """Stop polling and shut the executor down.

        Queued jobs are dropped and stay pending. With ``wait`` the jobs
        already executing run to the end; otherwise they are left running
        for the next recovery sweep.
        """
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._poll_interval + 1)
            self._thread = None
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)
        logger.info("Worker pool stopped")

    def status(self) -> dict[str, Any]:
        with self._lock:
            in_flight = sorted(self._in_flight)
        return {
            "running": self._thread is not None and self._thread.is_alive(),
            "concurrency": self._concurrency,
            "in_flight": len(in_flight),
            "jobs": in_flight,
        }
