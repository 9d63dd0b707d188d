"""Hands stored jobs to whichever executor the deployment uses."""

from __future__ import annotations

import logging
from typing import Protocol

from celery import Celery
from kombu.exceptions import OperationalError

from job_engine.core.exceptions import DispatchError
from job_engine.workers.pool import WorkerPool

logger = logging.getLogger(__name__)

RUN_JOB_TASK = "job_engine.workers.tasks.run_job"
JOBS_QUEUE = "jobs"


class Dispatcher(Protocol):
    def dispatch(self, job_id: str, resume: bool = False) -> None:
        """Queue the job for execution or raise DispatchError."""


class CeleryDispatcher:
    def __init__(self, celery_app: Celery):
        self._app = celery_app

    def dispatch(self, job_id: str, resume: bool = False) -> None:
        try:
            self._app.send_task(
                RUN_JOB_TASK,
                args=[job_id],
                kwargs={"resume": resume},
                queue=JOBS_QUEUE,
            )
        except OperationalError as e:
            logger.error(f"Broker unavailable, job {job_id} stays pending: {e}")
            raise DispatchError(f"Could not queue job {job_id}") from e
        logger.info(f"Queued job {job_id} on '{JOBS_QUEUE}' (resume={resume})")


class PoolDispatcher:
    def __init__(self, pool: WorkerPool):
        self.pool = pool

    def dispatch(self, job_id: str, resume: bool = False) -> None:
        self.pool.submit(job_id, resume=resume)
