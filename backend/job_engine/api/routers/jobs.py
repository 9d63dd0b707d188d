"""Job control endpoints: submit, inspect, stream, cancel and delete jobs."""
from __future__ import annotations

import logging
from typing import Iterator

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import StreamingResponse

from job_engine.api.dependencies.engine import get_container, get_principal
from job_engine.api.routers.job_helpers import load_authorized_job, page_result, serialize_job
from job_engine.api.schemas.job import JobCreate, JobCreated, JobList, JobOut, Pagination, ResultPage
from job_engine.core.container import Container
from job_engine.core.exceptions import DispatchError, InvalidTransitionError, JobNotFoundError
from job_engine.core.status import JobStatus
from job_engine.services.job_store import JobFilter
from job_engine.services.progress_publisher import StreamState, encode_event

logger = logging.getLogger(__name__)

router = APIRouter()

HEARTBEAT_FRAME = ": keep-alive\n\n"


@router.post(
    "",
    summary="Submit a job",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobCreated,
)
def create_job(
    payload: JobCreate,
    principal: str | None = Depends(get_principal),
    container: Container = Depends(get_container),
) -> JobCreated:
    """Store a pending job and hand it to a worker.

    A submission matching an active job of the same type and owner created
    within the deduplication window returns that job instead.
    """
    if payload.type not in container.registry:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown job type '{payload.type}'. Known types: {', '.join(container.registry.types())}",
        )

    job, created = container.store.create_deduplicated(
        payload.type,
        payload.metadata,
        principal,
        container.settings.dedup_window_seconds,
    )
    if created:
        container.publisher.publish(job)
        try:
            container.dispatcher.dispatch(job.id)
        except DispatchError as e:
            # The job stays pending; a recovery sweep dispatches it later
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"message": str(e), "job_id": job.id},
            ) from e

    return JobCreated(
        job_id=job.id,
        duplicate=not created,
        stream_url=f"/api/jobs/{job.id}/stream",
        status_url=f"/api/jobs/{job.id}/status",
    )


@router.get(
    "",
    summary="List jobs",
    response_model=JobList,
)
def list_jobs(
    status_filter: list[str] | None = Query(None, alias="status", description="pending, running, completed, failed, cancelled"),
    job_type: str | None = Query(None, alias="type"),
    owner_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500, description="Maximum number of jobs to return"),
    offset: int = Query(0, ge=0),
    principal: str | None = Depends(get_principal),
    container: Container = Depends(get_container),
) -> JobList:
    """Return jobs newest first, with per-status counts for dashboards.

    A caller with a principal only ever sees its own jobs.
    """
    if status_filter:
        unknown = [value for value in status_filter if value not in {s.value for s in JobStatus}]
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown status: {', '.join(unknown)}")
    if principal is not None:
        if owner_id is not None and owner_id != principal:
            raise HTTPException(status_code=403, detail="Cannot list another owner's jobs")
        owner_id = principal

    job_filter = JobFilter(
        status=status_filter,
        type=job_type,
        owner_id=owner_id,
        limit=limit,
        offset=offset,
    )
    jobs = container.store.list(job_filter)
    total = container.store.count(job_filter)
    return JobList(
        jobs=[serialize_job(job) for job in jobs],
        summary=container.store.summary(owner_id),
        pagination=Pagination(limit=limit, offset=offset, total=total, has_more=offset + len(jobs) < total),
    )


@router.get(
    "/{job_id}/status",
    summary="Fetch the full job record",
    response_model=JobOut,
)
def get_job_status(
    job_id: str,
    principal: str | None = Depends(get_principal),
    container: Container = Depends(get_container),
) -> JobOut:
    return serialize_job(load_authorized_job(container.store, job_id, principal))


@router.get(
    "/{job_id}/result",
    summary="Page through a job's result items",
    response_model=ResultPage,
)
def get_job_result(
    job_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    principal: str | None = Depends(get_principal),
    container: Container = Depends(get_container),
) -> ResultPage:
    job = load_authorized_job(container.store, job_id, principal)
    if job.result_data is None and job.status != JobStatus.PENDING.value:
        # Units committed before the final result live in result chunks
        return page_result(job, offset, limit, container.store.result_items(job.id))
    return page_result(job, offset, limit)


@router.get(
    "/{job_id}/stream",
    summary="Server-Sent Events stream for real-time progress",
)
def stream_job(
    job_id: str,
    principal: str | None = Depends(get_principal),
    container: Container = Depends(get_container),
) -> StreamingResponse:
    """Stream job snapshots via Server-Sent Events (SSE).

    Every frame is ``data: <json>`` with a ``type`` of ``connected``,
    ``progress``, ``complete`` or ``error``. The stream ends after
    ``complete`` or ``error``; comment frames keep idle connections open.
    """
    load_authorized_job(container.store, job_id, principal)
    subscription = container.publisher.subscribe(job_id, fetch=container.store.find)
    heartbeat = container.settings.stream_heartbeat_interval

    def event_generator() -> Iterator[str]:
        try:
            while subscription.state is not StreamState.CLOSED:
                event = subscription.receive(timeout=heartbeat)
                if event is None:
                    if subscription.state is StreamState.CLOSED:
                        break
                    yield HEARTBEAT_FRAME
                    continue
                frame = encode_event(event)
                if frame is not None:
                    yield frame
        finally:
            subscription.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.post(
    "/{job_id}/cancel",
    summary="Cancel a pending or running job",
    response_model=JobOut,
)
def cancel_job(
    job_id: str,
    principal: str | None = Depends(get_principal),
    container: Container = Depends(get_container),
) -> JobOut:
    """Request cancellation. Running jobs stop after their current unit.

    Cancelling a job that already finished changes nothing.
    """
    job = load_authorized_job(container.store, job_id, principal)
    if job.is_terminal:
        return serialize_job(job)
    try:
        job = container.store.set_status(job_id, JobStatus.CANCELLED)
    except InvalidTransitionError:
        # Finished between the read and the update
        job = container.store.get(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found") from None
    container.publisher.publish(job)
    return serialize_job(job)


@router.delete(
    "/{job_id}",
    summary="Delete a finished job",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_job(
    job_id: str,
    principal: str | None = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Response:
    job = load_authorized_job(container.store, job_id, principal)
    if not job.is_terminal:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is {job.status}; cancel it before deleting",
        )
    if container.store.delete(job_id):
        container.publisher.publish_deleted(job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
