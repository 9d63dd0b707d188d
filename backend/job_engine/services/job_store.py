"""Durable job persistence with a status-transition guard.

The store owns no scheduling logic and publishes nothing: workers and the
API publish progress themselves after a mutation has been committed. Every
mutation runs in its own transaction against a row lock, so readers always
observe whole updates.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from job_engine.core.exceptions import InvalidTransitionError, JobNotFoundError, LeaseLostError
from job_engine.core.status import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobStatus,
    can_transition,
)
from job_engine.db.models.job import Job, JobResultChunk, utcnow

logger = logging.getLogger(__name__)

# Running jobs never report 100; it is written together with "completed".
MAX_RUNNING_PROGRESS = 99


@dataclass(frozen=True)
class JobRecord:
    """Immutable snapshot of a job row, safe to hand across threads."""

    id: str
    type: str
    status: str
    progress: int
    metadata: dict[str, Any]
    result_data: dict[str, Any] | None
    error_message: str | None
    owner_id: str | None
    created_at: datetime | None
    started_at: datetime | None
    updated_at: datetime | None
    completed_at: datetime | None
    lease: str | None = None

    @classmethod
    def from_model(cls, job: Job) -> "JobRecord":
        return cls(
            id=job.id,
            type=job.type,
            status=job.status,
            progress=job.progress or 0,
            metadata=copy.deepcopy(job.meta or {}),
            result_data=copy.deepcopy(job.result_data),
            error_message=job.error_message,
            owner_id=job.owner_id,
            created_at=job.created_at,
            started_at=job.started_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
            lease=job.lease_token,
        )

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status) in TERMINAL_STATUSES

    @property
    def checkpoint(self) -> Any:
        return self.metadata.get("checkpoint")


@dataclass(frozen=True)
class JobState:
    """The two columns a worker checks between units."""

    status: str
    lease: str | None


@dataclass
class JobFilter:
    status: str | list[str] | None = None
    type: str | None = None
    owner_id: str | None = None
    limit: int | None = 50
    offset: int = 0
    oldest_first: bool = False
    updated_before: datetime | None = None
    statuses: list[str] = field(init=False)

    def __post_init__(self) -> None:
        if self.status is None:
            self.statuses = []
        elif isinstance(self.status, str):
            self.statuses = [self.status]
        else:
            self.statuses = list(self.status)


class JobStore:
    """Job table access. All methods are safe to call from any thread."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._session_factory() as session:
            with session.begin():
                yield session

    @staticmethod
    def _lock(session: Session, job_id: str) -> Job:
        job = session.execute(
            select(Job).where(Job.id == job_id).with_for_update()
        ).scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    @staticmethod
    def _check_lease(job: Job, lease: str | None) -> None:
        if lease is not None and job.lease_token != lease:
            raise LeaseLostError(job.id)

    @staticmethod
    def _drop_chunks(session: Session, job_id: str) -> None:
        session.execute(delete(JobResultChunk).where(JobResultChunk.job_id == job_id))

    @staticmethod
    def _lock_submissions(session: Session, job_type: str, owner_id: str | None) -> None:
        """Serialize dedup checks for one (type, owner) pair until commit.

        SQLite transactions already start with BEGIN IMMEDIATE; PostgreSQL
        takes a transaction-scoped advisory lock on the pair instead.
        """
        if session.get_bind().dialect.name != "postgresql":
            return
        key = f"{job_type}:{owner_id or ''}"
        session.execute(select(func.pg_advisory_xact_lock(func.hashtext(key))))

    # ------------------------------------------------------------------ create

    def create(
        self,
        job_type: str,
        metadata: dict[str, Any] | None = None,
        owner_id: str | None = None,
    ) -> JobRecord:
        with self._transaction() as session:
            job = self._insert(session, job_type, metadata, owner_id)
            record = JobRecord.from_model(job)
        logger.info(f"Created job {record.id} (type={job_type}, owner={owner_id})")
        return record

    def create_deduplicated(
        self,
        job_type: str,
        metadata: dict[str, Any] | None,
        owner_id: str | None,
        window_seconds: float,
    ) -> tuple[JobRecord, bool]:
        """Create a job unless an equivalent active one was created within the window.

        Returns the job and whether it was newly created.
        """
        with self._transaction() as session:
            existing = None
            if window_seconds > 0:
                self._lock_submissions(session, job_type, owner_id)
                cutoff = utcnow() - timedelta(seconds=window_seconds)
                query = select(Job).where(
                    Job.type == job_type,
                    Job.status.in_([s.value for s in ACTIVE_STATUSES]),
                    Job.created_at >= cutoff,
                )
                if owner_id is None:
                    query = query.where(Job.owner_id.is_(None))
                else:
                    query = query.where(Job.owner_id == owner_id)
                existing = session.scalars(
                    query.order_by(Job.created_at.desc()).limit(1)
                ).first()

            if existing is not None:
                record = JobRecord.from_model(existing)
                created = False
            else:
                record = JobRecord.from_model(
                    self._insert(session, job_type, metadata, owner_id)
                )
                created = True

        if created:
            logger.info(f"Created job {record.id} (type={job_type}, owner={owner_id})")
        else:
            logger.warning(
                f"Duplicate {job_type} submission for owner {owner_id}; "
                f"returning existing job {record.id}"
            )
        return record, created

    @staticmethod
    def _insert(
        session: Session,
        job_type: str,
        metadata: dict[str, Any] | None,
        owner_id: str | None,
    ) -> Job:
        now = utcnow()
        job = Job(
            type=job_type,
            status=JobStatus.PENDING.value,
            progress=0,
            meta=copy.deepcopy(metadata or {}),
            owner_id=owner_id,
            created_at=now,
            updated_at=now,
        )
        session.add(job)
        session.flush()
        return job

    # ------------------------------------------------------------------- reads

    def get(self, job_id: str) -> JobRecord:
        record = self.find(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    def find(self, job_id: str) -> JobRecord | None:
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            return JobRecord.from_model(job) if job else None

    def get_state(self, job_id: str) -> JobState | None:
        with self._session_factory() as session:
            row = session.execute(
                select(Job.status, Job.lease_token).where(Job.id == job_id)
            ).first()
        return JobState(status=row.status, lease=row.lease_token) if row else None

    def result_items(self, job_id: str) -> list[Any]:
        """Items committed so far by a job that has not written its final result."""
        query = (
            select(JobResultChunk.items)
            .where(JobResultChunk.job_id == job_id)
            .order_by(JobResultChunk.seq)
        )
        with self._session_factory() as session:
            return [item for chunk in session.scalars(query) for item in chunk]

    def list(self, job_filter: JobFilter | None = None) -> list[JobRecord]:
        job_filter = job_filter or JobFilter()
        query = self._apply_filter(select(Job), job_filter)
        order = Job.created_at.asc() if job_filter.oldest_first else Job.created_at.desc()
        query = query.order_by(order).offset(job_filter.offset)
        if job_filter.limit is not None:
            query = query.limit(job_filter.limit)
        with self._session_factory() as session:
            return [JobRecord.from_model(job) for job in session.scalars(query).all()]

    def count(self, job_filter: JobFilter | None = None) -> int:
        query = self._apply_filter(select(func.count(Job.id)), job_filter or JobFilter())
        with self._session_factory() as session:
            return session.scalar(query) or 0

    def summary(self, owner_id: str | None = None) -> dict[str, int]:
        """Count jobs per status, optionally for one owner."""
        query = select(Job.status, func.count(Job.id)).group_by(Job.status)
        if owner_id is not None:
            query = query.where(Job.owner_id == owner_id)
        counts = {status.value: 0 for status in JobStatus}
        with self._session_factory() as session:
            for status, total in session.execute(query).all():
                counts[status] = total
        counts["total"] = sum(counts[status.value] for status in JobStatus)
        return counts

    @staticmethod
    def _apply_filter(query, job_filter: JobFilter):
        if job_filter.statuses:
            query = query.where(Job.status.in_(job_filter.statuses))
        if job_filter.type:
            query = query.where(Job.type == job_filter.type)
        if job_filter.owner_id:
            query = query.where(Job.owner_id == job_filter.owner_id)
        if job_filter.updated_before is not None:
            query = query.where(Job.updated_at < job_filter.updated_before)
        return query

    # --------------------------------------------------------------- mutations

    def claim(self, job_id: str) -> JobRecord | None:
        """Move a pending job to running. Returns None if it is not pending."""
        with self._transaction() as session:
            job = session.execute(
                select(Job).where(Job.id == job_id).with_for_update()
            ).scalar_one_or_none()
            if job is None or job.status != JobStatus.PENDING.value:
                return None
            now = utcnow()
            job.status = JobStatus.RUNNING.value
            job.lease_token = str(uuid.uuid4())
            job.started_at = now
            job.updated_at = now
            job.meta = {**(job.meta or {}), "started_at": now.isoformat()}
            session.flush()
            record = JobRecord.from_model(job)
        logger.info(f"Claimed job {job_id}")
        return record

    def release(self, job_id: str, lease: str) -> bool:
        """Take a running job away from the worker holding ``lease``.

        Only one caller can release a given lease. The job stays running with
        no lease until ``resume`` hands it to a new worker.
        """
        with self._transaction() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.RUNNING.value,
                    Job.lease_token == lease,
                )
                .values(lease_token=None, updated_at=utcnow())
            )
            released = result.rowcount > 0
        if released:
            logger.info(f"Released job {job_id} for recovery")
        return released

    def resume(self, job_id: str) -> JobRecord | None:
        """Give a released running job a new lease. None if it is not waiting."""
        with self._transaction() as session:
            job = session.execute(
                select(Job).where(Job.id == job_id).with_for_update()
            ).scalar_one_or_none()
            if job is None or job.status != JobStatus.RUNNING.value or job.lease_token is not None:
                return None
            job.lease_token = str(uuid.uuid4())
            job.updated_at = utcnow()
            session.flush()
            record = JobRecord.from_model(job)
        logger.info(f"Took over job {job_id}")
        return record

    def set_status(
        self,
        job_id: str,
        status: str | JobStatus,
        error_message: str | None = None,
        result_data: dict[str, Any] | None = None,
        lease: str | None = None,
    ) -> JobRecord:
        """Apply a guarded status transition.

        Raises InvalidTransitionError when the move is not allowed, which
        always includes any move out of a terminal state. A worker passes its
        ``lease`` and gets LeaseLostError once another worker owns the job.
        """
        target = JobStatus(status)
        with self._transaction() as session:
            job = self._lock(session, job_id)
            self._check_lease(job, lease)
            if not can_transition(job.status, target):
                raise InvalidTransitionError(job_id, job.status, target.value)

            now = utcnow()
            job.status = target.value
            job.updated_at = now
            if target is JobStatus.RUNNING:
                job.started_at = now
                job.meta = {**(job.meta or {}), "started_at": now.isoformat()}
            if target in TERMINAL_STATUSES:
                job.completed_at = now
            if target is JobStatus.COMPLETED:
                job.progress = 100
            if target is JobStatus.FAILED:
                job.error_message = error_message or "Job failed"
            if result_data is not None:
                job.result_data = copy.deepcopy(result_data)
                self._drop_chunks(session, job_id)
            session.flush()
            record = JobRecord.from_model(job)
        logger.info(f"Job {job_id} -> {target.value}")
        return record

    def update_progress(
        self,
        job_id: str,
        progress: int,
        metadata_patch: dict[str, Any] | None = None,
    ) -> JobRecord:
        """Raise progress and merge ``metadata_patch`` into the stored metadata.

        Only running jobs accept progress. Progress never decreases and stays
        below 100 until the job completes.
        """
        with self._transaction() as session:
            job = self._lock(session, job_id)
            if job.status != JobStatus.RUNNING.value:
                raise InvalidTransitionError(job_id, job.status, JobStatus.RUNNING.value)
            job.progress = self._next_progress(job.progress, progress)
            if metadata_patch:
                job.meta = {**(job.meta or {}), **copy.deepcopy(metadata_patch)}
            job.updated_at = utcnow()
            session.flush()
            return JobRecord.from_model(job)

    def save_checkpoint(self, job_id: str, checkpoint: Any) -> JobRecord:
        with self._transaction() as session:
            job = self._lock(session, job_id)
            if job.status not in (JobStatus.RUNNING.value, JobStatus.CANCELLED.value):
                raise InvalidTransitionError(job_id, job.status, JobStatus.RUNNING.value)
            now = utcnow()
            job.meta = {
                **(job.meta or {}),
                "checkpoint": copy.deepcopy(checkpoint),
                "last_checkpoint_at": now.isoformat(),
            }
            job.updated_at = now
            session.flush()
            return JobRecord.from_model(job)

    def set_result(
        self,
        job_id: str,
        result_data: dict[str, Any] | None,
        lease: str | None = None,
    ) -> JobRecord:
        with self._transaction() as session:
            job = self._lock(session, job_id)
            self._check_lease(job, lease)
            job.result_data = copy.deepcopy(result_data)
            if result_data is not None:
                self._drop_chunks(session, job_id)
            job.updated_at = utcnow()
            session.flush()
            return JobRecord.from_model(job)

    def commit_unit(
        self,
        job_id: str,
        *,
        progress: int,
        metadata_patch: dict[str, Any],
        items: list[Any] | None = None,
        result_data: dict[str, Any] | None = None,
        complete: bool = False,
        lease: str | None = None,
    ) -> JobRecord:
        """Persist the outcome of one finished unit of work in a single transaction.

        The checkpoint travels in ``metadata_patch`` and the unit's ``items``
        are appended as one result chunk, so each commit writes only what the
        unit produced. When ``complete`` is set the same write moves the job
        to completed with progress 100 and stores ``result_data`` in place of
        the chunks. A job cancelled while the unit was in flight still records
        the unit's checkpoint and items, but keeps its status and progress.
        """
        with self._transaction() as session:
            job = self._lock(session, job_id)
            self._check_lease(job, lease)
            now = utcnow()
            finishing = False
            if job.status == JobStatus.RUNNING.value:
                if complete:
                    job.status = JobStatus.COMPLETED.value
                    job.progress = 100
                    job.completed_at = now
                    finishing = True
                else:
                    job.progress = self._next_progress(job.progress, progress)
            elif job.status != JobStatus.CANCELLED.value:
                raise InvalidTransitionError(job_id, job.status, JobStatus.RUNNING.value)

            patch = copy.deepcopy(metadata_patch)
            if "checkpoint" in patch:
                patch["last_checkpoint_at"] = now.isoformat()
            job.meta = {**(job.meta or {}), **patch}
            if finishing:
                job.result_data = copy.deepcopy(result_data)
                self._drop_chunks(session, job_id)
            elif items:
                seq = session.scalar(
                    select(func.coalesce(func.max(JobResultChunk.seq) + 1, 0)).where(
                        JobResultChunk.job_id == job_id
                    )
                )
                session.add(JobResultChunk(job_id=job_id, seq=seq, items=copy.deepcopy(items)))
            job.updated_at = now
            session.flush()
            return JobRecord.from_model(job)

    @staticmethod
    def _next_progress(current: int | None, proposed: int) -> int:
        proposed = max(0, min(int(proposed), MAX_RUNNING_PROGRESS))
        return max(current or 0, proposed)

    # ---------------------------------------------------------------- deletion

    def delete(self, job_id: str) -> bool:
        with self._transaction() as session:
            self._drop_chunks(session, job_id)
            result = session.execute(delete(Job).where(Job.id == job_id))
            deleted = result.rowcount > 0
        if deleted:
            logger.info(f"Deleted job {job_id}")
        return deleted

    def delete_terminal(self, older_than: timedelta) -> int:
        """Remove terminal jobs that finished more than ``older_than`` ago."""
        cutoff = utcnow() - older_than
        expired = select(Job.id).where(
            Job.status.in_([s.value for s in TERMINAL_STATUSES]),
            Job.completed_at < cutoff,
        )
        with self._transaction() as session:
            session.execute(delete(JobResultChunk).where(JobResultChunk.job_id.in_(expired)))
            result = session.execute(delete(Job).where(Job.id.in_(expired)))
            removed = result.rowcount or 0
        if removed:
            logger.info(f"Retention sweep removed {removed} job(s) finished before {cutoff.isoformat()}")
        return removed
