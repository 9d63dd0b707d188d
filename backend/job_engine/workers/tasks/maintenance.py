"""Periodic recovery and retention tasks on the ``maintenance`` queue."""

from __future__ import annotations

import logging
from datetime import timedelta

from celery.signals import worker_ready

from job_engine.core.container import get_container
from job_engine.workers.celery_app import celery_app
from job_engine.workers.sweeps import recovery_sweep, retention_sweep

logger = logging.getLogger(__name__)


@celery_app.task(name="job_engine.workers.tasks.recover_jobs")
def recover_jobs_task() -> dict[str, int]:
    """Resume, fail or re-queue jobs whose worker went away."""
    container = get_container()
    stale_after = timedelta(seconds=container.settings.recovery_stale_seconds)
    report = recovery_sweep(
        container.store,
        container.publisher,
        resume=lambda job_id: container.dispatcher.dispatch(job_id, resume=True),
        redispatch=container.dispatcher.dispatch,
        stale_after=stale_after,
    )
    return report.as_dict()


@celery_app.task(name="job_engine.workers.tasks.sweep_expired_jobs")
def sweep_expired_jobs_task() -> int:
    container = get_container()
    return retention_sweep(container.store, container.settings.retention_days)


@worker_ready.connect
def recover_on_worker_ready(sender=None, **kwargs) -> None:
    if not get_container().settings.recover_on_startup:
        return
    logger.info("Worker ready, scheduling recovery sweep")
    recover_jobs_task.apply_async(queue="maintenance")
