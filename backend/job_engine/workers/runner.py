"""Executes one job unit by unit against its registered handler."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from job_engine.core.exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    LeaseLostError,
    UnknownJobTypeError,
)
from job_engine.core.status import JobStatus
from job_engine.handlers.base import HandlerFatalError, JobContext, TaskHandler, UnitResult
from job_engine.handlers.registry import HandlerRegistry
from job_engine.services.job_store import JobRecord, JobStore
from job_engine.services.progress_publisher import ProgressPublisher

logger = logging.getLogger(__name__)


def _partial_result(items: list[Any]) -> dict[str, Any]:
    return {"items": items, "count": len(items), "partial": True}


class JobRunner:
    """Drives a claimed job to a terminal state.

    Between units the runner re-reads the job's status and lease, so a
    cancel request takes effect after at most one unit and a worker whose
    job was taken over stops. Every unit is committed together with its
    checkpoint and its items, which makes the checkpoint the only thing
    needed to resume after a crash.
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        publisher: ProgressPublisher,
        *,
        max_unit_attempts: int = 3,
        retry_backoff_seconds: float = 2.0,
        per_job_concurrency: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._registry = registry
        self._publisher = publisher
        self._max_attempts = max_unit_attempts
        self._backoff = retry_backoff_seconds
        self._per_job_concurrency = per_job_concurrency
        self._sleep = sleep

    def run(self, job_id: str, resume: bool = False) -> JobRecord | None:
        """Run ``job_id`` and return its final record (None if it was deleted).

        With ``resume`` the job must be running and released by the recovery
        sweep; taking it over is a compare-and-set, so of several workers
        asked to resume the same job only one proceeds. Otherwise the job is
        claimed from pending first.
        """
        if resume:
            job = self._store.resume(job_id)
            if job is None:
                logger.info(f"Job {job_id} is not waiting to be resumed, skipping")
                return self._store.find(job_id)
            logger.info(f"Resuming job {job_id} from checkpoint {job.checkpoint!r}")
        else:
            job = self._store.claim(job_id)
            if job is None:
                logger.info(f"Job {job_id} was not pending, skipping")
                return self._store.find(job_id)
        self._publisher.publish(job)

        try:
            handler = self._registry.get(job.type)
        except UnknownJobTypeError as e:
            logger.error(f"Job {job_id}: {e}")
            return self._fail(job_id, job.lease, str(e), None)

        with ThreadPoolExecutor(
            max_workers=self._per_job_concurrency,
            thread_name_prefix=f"job-{job_id[:8]}",
        ) as executor:
            return self._execute(job, handler, executor)

    def _execute(self, job: JobRecord, handler: TaskHandler, executor: ThreadPoolExecutor) -> JobRecord | None:
        lease = job.lease
        metadata = job.metadata
        checkpoint = job.checkpoint
        if checkpoint is not None:
            items = self._store.result_items(job.id)
            exact = float(metadata.get("progress_exact", job.progress))
        else:
            items = []
            exact = 0.0

        while True:
            state = self._store.get_state(job.id)
            if state is None:
                logger.info(f"Job {job.id} was deleted while running")
                return None
            if state.lease != lease:
                logger.warning(f"Job {job.id} was taken over by another worker, stopping")
                return self._store.find(job.id)
            if state.status == JobStatus.CANCELLED.value:
                return self._stop_cancelled(job.id, lease, items)
            if state.status != JobStatus.RUNNING.value:
                logger.warning(f"Job {job.id} left running unexpectedly ({state.status}), stopping")
                return self._store.find(job.id)

            context = JobContext(
                id=job.id,
                type=job.type,
                owner_id=job.owner_id,
                metadata=metadata,
                executor=executor,
            )
            try:
                unit, attempts = self._execute_unit(handler, context, checkpoint)
            except HandlerFatalError as e:
                logger.error(f"Job {job.id} failed: {e}")
                return self._fail(job.id, lease, str(e), items)
            except Exception as e:
                logger.error(f"Job {job.id} failed after {self._max_attempts} attempt(s): {e}", exc_info=True)
                return self._fail(job.id, lease, str(e) or e.__class__.__name__, items)

            items.extend(unit.items)
            exact = min(exact + unit.progress_delta, 100.0)
            patch = {
                **unit.metadata,
                "checkpoint": unit.checkpoint,
                "progress_exact": exact,
                "attempts": attempts,
            }

            if unit.done:
                try:
                    result = handler.finalize(context, items)
                except Exception as e:
                    logger.error(f"Job {job.id}: finalize failed: {e}", exc_info=True)
                    return self._fail(job.id, lease, str(e) or e.__class__.__name__, items)
                record = self._commit(job.id, lease, 100, patch, unit.items, result, complete=True)
            else:
                record = self._commit(job.id, lease, math.floor(exact + 1e-6), patch, unit.items)
            if record is None:
                return self._store.find(job.id)
            self._publisher.publish(record)

            checkpoint = unit.checkpoint
            metadata = record.metadata
            if record.status == JobStatus.CANCELLED.value:
                return self._stop_cancelled(job.id, lease, items)
            if unit.done:
                logger.info(f"Job {job.id} completed ({len(items)} item(s))")
                return record

    def _execute_unit(
        self, handler: TaskHandler, context: JobContext, checkpoint: Any
    ) -> tuple[UnitResult, int]:
        attempt = 1
        while True:
            try:
                return handler.execute_unit(context, checkpoint), attempt
            except HandlerFatalError:
                raise
            except Exception as e:
                if attempt >= self._max_attempts:
                    raise
                delay = self._backoff * 2 ** (attempt - 1)
                logger.warning(
                    f"Job {context.id}: unit failed (attempt {attempt}/{self._max_attempts}): {e}; "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                attempt += 1

    def _commit(
        self,
        job_id: str,
        lease: str | None,
        progress: int,
        patch: dict[str, Any],
        items: list[Any],
        result: dict[str, Any] | None = None,
        complete: bool = False,
    ) -> JobRecord | None:
        try:
            return self._store.commit_unit(
                job_id,
                progress=progress,
                metadata_patch=patch,
                items=items,
                result_data=result,
                complete=complete,
                lease=lease,
            )
        except JobNotFoundError:
            logger.info(f"Job {job_id} was deleted before its unit was committed")
        except (InvalidTransitionError, LeaseLostError) as e:
            logger.warning(f"Discarding unit for job {job_id}: {e}")
        return None

    def _stop_cancelled(self, job_id: str, lease: str | None, items: list[Any]) -> JobRecord | None:
        try:
            record = self._store.set_result(job_id, _partial_result(items), lease=lease)
        except JobNotFoundError:
            return None
        except LeaseLostError as e:
            logger.warning(f"Not recording partial result: {e}")
            return self._store.find(job_id)
        logger.info(f"Job {job_id} cancelled after {len(items)} item(s)")
        self._publisher.publish(record)
        return record

    def _fail(self, job_id: str, lease: str | None, message: str, items: list[Any] | None) -> JobRecord | None:
        try:
            record = self._store.set_status(
                job_id,
                JobStatus.FAILED,
                error_message=message,
                result_data=_partial_result(items) if items is not None else None,
                lease=lease,
            )
        except JobNotFoundError:
            return None
        except (InvalidTransitionError, LeaseLostError) as e:
            # Cancelled or taken over while the failing unit ran
            logger.info(f"Not failing job {job_id}: {e}")
            return self._store.find(job_id)
        self._publisher.publish(record)
        return record
