"""Celery task that executes one job on the ``jobs`` queue."""

from __future__ import annotations

import logging

from job_engine.core.container import get_container
from job_engine.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="job_engine.workers.tasks.run_job")
def run_job_task(self, job_id: str, resume: bool = False) -> dict | None:
    """Claim (or resume) the job and run it to a terminal state."""
    container = get_container()
    logger.info(f"Task {self.request.id}: running job {job_id} (resume={resume})")
    record = container.runner.run(job_id, resume=resume)
    if record is None:
        return None
    return {"job_id": record.id, "status": record.status, "progress": record.progress}
