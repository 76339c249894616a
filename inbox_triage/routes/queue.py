"""
Job Queue API Routes
Submit, inspect, remove and retry triage jobs for the authenticated user.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from inbox_triage.auth.verify import current_subject
from inbox_triage.errors import JobValidationError, OwnershipError, QueueNotInitializedError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.api.queue_request import SubmitJobRequest
from inbox_triage.models.api.queue_response import (
    JobActionResponse,
    JobResponse,
    QueueHealthResponse,
    QueueStatsResponse,
    SubmitJobResponse,
)
from inbox_triage.queue.models import Job
from inbox_triage.queue.service import JobService, get_job_service

logger = get_logger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])


def _service() -> JobService:
    try:
        return get_job_service()
    except QueueNotInitializedError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e


def _owned_job(service: JobService, job_id: str, user_id: str) -> Job:
    job = service.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if job.subject_id != user_id:
        logger.warning("Cross-user job access denied", user_id=user_id, job_id=job_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return job


@router.get("/health", response_model=QueueHealthResponse)
async def queue_health():
    """Queue health: healthy, degraded or unavailable. Does not require auth."""
    try:
        service = get_job_service()
    except QueueNotInitializedError:
        return QueueHealthResponse(status="unavailable", running=False)
    return QueueHealthResponse(**service.health())


@router.get("/stats", response_model=QueueStatsResponse)
async def queue_stats(user_id: str = Depends(current_subject)):
    """Queue-wide counters."""
    return QueueStatsResponse(**_service().get_stats().to_dict())


@router.post("/jobs", response_model=SubmitJobResponse, status_code=status.HTTP_201_CREATED)
async def submit_job(request: SubmitJobRequest, user_id: str = Depends(current_subject)):
    """Submit a job; the caller must own every email or thread it references."""
    service = _service()
    try:
        job_id = await service.submit(user_id, request.type, request.payload, request.priority)
    except (JobValidationError, OwnershipError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except QueueNotInitializedError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e

    logger.info("Job submitted via API", user_id=user_id, job_id=job_id, job_type=request.type.value)
    return SubmitJobResponse(job_id=job_id)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, user_id: str = Depends(current_subject)):
    job = _owned_job(_service(), job_id, user_id)
    return JobResponse(**job.to_public_dict(), result=job.result)


@router.delete("/jobs/{job_id}", response_model=JobActionResponse)
async def remove_job(job_id: str, user_id: str = Depends(current_subject)):
    """Remove a job that is not currently being processed."""
    service = _service()
    _owned_job(service, job_id, user_id)

    if not service.remove_job(job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Job is processing and cannot be removed"
        )
    return JobActionResponse(success=True, job_id=job_id, message="Job removed")


@router.post("/jobs/{job_id}/retry", response_model=JobActionResponse)
async def retry_job(job_id: str, user_id: str = Depends(current_subject)):
    """Reset retries and re-admit a failed or dead-lettered job."""
    service = _service()
    _owned_job(service, job_id, user_id)

    if not service.retry_job(job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Job is processing and cannot be retried"
        )
    return JobActionResponse(success=True, job_id=job_id, message="Job re-queued")
