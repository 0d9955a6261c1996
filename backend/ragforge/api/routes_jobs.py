"""Job queue routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ragforge.api.dependencies import get_job_queue
from ragforge.core.errors import NotFoundError
from ragforge.jobs.queue import JobQueue
from ragforge.models.dto import (
    CleanupRequest,
    CleanupResponse,
    JobCreateRequest,
    JobResponse,
    JobStatsResponse,
)

router = APIRouter()


@router.post("", response_model=JobResponse, status_code=201, summary="Enqueue a job")
async def create_job(request: JobCreateRequest, queue: JobQueue = Depends(get_job_queue)) -> JobResponse:
    job_id = queue.enqueue(
        request.job_type,
        request.payload,
        priority=request.priority,
        max_attempts=request.max_attempts,
    )
    return JobResponse.from_entity(queue.get(job_id))


# Declared before /{job_id} so "stats" is not read as an id.
@router.get("/stats", response_model=JobStatsResponse, summary="Job counts per status")
async def job_stats(queue: JobQueue = Depends(get_job_queue)) -> JobStatsResponse:
    return JobStatsResponse(**queue.stats())


@router.post("/cleanup", response_model=CleanupResponse, summary="Delete finished jobs past retention")
async def cleanup_jobs(
    request: CleanupRequest | None = None,
    queue: JobQueue = Depends(get_job_queue),
) -> CleanupResponse:
    retention = request.retention_days if request else None
    return CleanupResponse(deleted=queue.cleanup(retention))


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, queue: JobQueue = Depends(get_job_queue)) -> JobResponse:
    job = queue.get(job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    return JobResponse.from_entity(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: str, queue: JobQueue = Depends(get_job_queue)) -> JobResponse:
    return JobResponse.from_entity(queue.cancel(job_id))


__all__ = ["router"]
