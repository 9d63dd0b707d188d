"""Shared helpers for shaping job responses and checking access."""
from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status

from job_engine.api.schemas.job import JobOut, Pagination, ResultPage
from job_engine.services.job_store import JobRecord, JobStore


def serialize_job(job: JobRecord) -> JobOut:
    return JobOut.model_validate(job)


def load_authorized_job(store: JobStore, job_id: str, principal: str | None) -> JobRecord:
    """Fetch a job the caller may see.

    Ownerless jobs are visible to everyone. An owned job needs a principal
    (401 without one) that matches the owner (403 otherwise).
    """
    job = store.find(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if job.owner_id is not None:
        if principal is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required for this job",
            )
        if principal != job.owner_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Job belongs to another owner")
    return job


def page_result(job: JobRecord, offset: int, limit: int, items: list[Any] | None = None) -> ResultPage:
    """Slice the items of a job's result document.

    ``items`` replaces the stored items for jobs still producing output.
    """
    result = dict(job.result_data or {})
    stored = result.pop("items", None) or []
    partial = bool(result.pop("partial", False)) or items is not None
    if items is None:
        items = stored
    result.pop("truncated", None)
    page = items[offset : offset + limit]
    return ResultPage(
        job_id=job.id,
        status=job.status,
        partial=partial,
        items=page,
        summary=result,
        pagination=Pagination(
            limit=limit,
            offset=offset,
            total=len(items),
            has_more=offset + len(page) < len(items),
        ),
    )
