from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from tee_jobs.api.deps import Runtime
from tee_jobs.auth.security import CurrentUser
from tee_jobs.domain.errors import (
    DuplicateJobError,
    JobNotFoundError,
    NotCancellableError,
    QueueError,
    UserNotFoundError,
)
from tee_jobs.domain.schemas import JobCreateRequest, JobFilters, JobStatusView, PagedJobs
from tee_jobs.domain.states import JobStatus, JobType

router = APIRouter()

class LatestCompleted(BaseModel):
    latest_completed_at: Optional[datetime] = None

class CancelResult(BaseModel):
    cancelled: bool

@router.post("/data-processing", status_code=status.HTTP_201_CREATED)
async def create_data_processing_job(payload: JobCreateRequest, user: CurrentUser, runtime: Runtime):
    try:
        job_id = await runtime.producer.submit(user.id, payload)
    except UserNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DuplicateJobError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except QueueError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"jobId": str(job_id)}

@router.get("", response_model=PagedJobs)
async def list_jobs(
    user: CurrentUser,
    runtime: Runtime,
    job_status: Optional[JobStatus] = Query(default=None, alias="status"),
    job_type: Optional[JobType] = Query(default=None, alias="type"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
):
    filters = JobFilters(status=job_status, type=job_type, page=page, limit=limit)
    return await runtime.producer.list_jobs(user.id, filters)

@router.get("/latest-completed-at", response_model=LatestCompleted)
async def latest_completed_at(user: CurrentUser, runtime: Runtime):
    return LatestCompleted(latest_completed_at=await runtime.producer.latest_completed(user.id))

@router.get("/{job_id}/status", response_model=JobStatusView)
async def get_job_status(job_id: UUID, user: CurrentUser, runtime: Runtime):
    try:
        return await runtime.producer.get_status(job_id, user.id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

@router.delete("/{job_id}", response_model=CancelResult)
async def cancel_job(job_id: UUID, user: CurrentUser, runtime: Runtime):
    try:
        cancelled = await runtime.producer.cancel(job_id, user.id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except NotCancellableError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return CancelResult(cancelled=cancelled)
