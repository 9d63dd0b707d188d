"""Recovery and retention sweeps shared by the Celery beat tasks and the embedded pool."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from job_engine.core.exceptions import InvalidTransitionError, JobNotFoundError
from job_engine.core.status import JobStatus
from job_engine.db.models.job import utcnow
from job_engine.services.job_store import JobFilter, JobStore
from job_engine.services.progress_publisher import ProgressPublisher

logger = logging.getLogger(__name__)

NO_CHECKPOINT_MESSAGE = "Worker stopped before the first checkpoint"


@dataclass
class RecoveryReport:
    resumed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    redispatched: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "resumed": len(self.resumed),
            "failed": len(self.failed),
            "redispatched": len(self.redispatched),
        }


def recovery_sweep(
    store: JobStore,
    publisher: ProgressPublisher,
    *,
    resume: Callable[[str], Any],
    redispatch: Callable[[str], Any],
    stale_after: timedelta | None = None,
    skip: Callable[[str], bool] = lambda job_id: False,
) -> RecoveryReport:
    """Pick up work orphaned by a stopped worker.

    Running jobs with a checkpoint are released from their old lease and
    resumed from the checkpoint; running jobs without one are failed.
    Releasing is a compare-and-set on the lease seen by this sweep, so
    overlapping sweeps resume a job once. Pending jobs are handed out again,
    which is harmless for jobs that are still queued because only one claim
    can succeed. With ``stale_after`` only jobs not written to for that long
    are considered.
    """
    report = RecoveryReport()
    cutoff = utcnow() - stale_after if stale_after else None

    running = store.list(
        JobFilter(status=JobStatus.RUNNING.value, limit=None, oldest_first=True, updated_before=cutoff)
    )
    for job in running:
        if skip(job.id):
            continue
        if job.checkpoint is not None:
            if job.lease is not None and not store.release(job.id, job.lease):
                logger.info(f"Recovery skipped job {job.id}: already taken over")
                continue
            resume(job.id)
            report.resumed.append(job.id)
            continue
        try:
            record = store.set_status(job.id, JobStatus.FAILED, error_message=NO_CHECKPOINT_MESSAGE)
        except (InvalidTransitionError, JobNotFoundError) as e:
            logger.info(f"Recovery skipped job {job.id}: {e}")
            continue
        publisher.publish(record)
        report.failed.append(job.id)

    pending = store.list(
        JobFilter(status=JobStatus.PENDING.value, limit=None, oldest_first=True, updated_before=cutoff)
    )
    for job in pending:
        if skip(job.id):
            continue
        redispatch(job.id)
        report.redispatched.append(job.id)

    if report.resumed or report.failed or report.redispatched:
        logger.info(f"Recovery sweep: {report.as_dict()}")
    return report


def retention_sweep(store: JobStore, retention_days: int) -> int:
    """Delete terminal jobs that finished more than ``retention_days`` ago."""
    return store.delete_terminal(older_than=timedelta(days=retention_days))
