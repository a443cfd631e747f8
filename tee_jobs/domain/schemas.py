from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from tee_jobs.domain.states import JobStatus, JobType


class JobCreateRequest(BaseModel):
    """A processing request as accepted by the producer."""

    model_config = ConfigDict(populate_by_name=True)

    blob_id: str = Field(min_length=1, alias="blobId")
    onchain_file_id: str = Field(min_length=1, alias="onchainFileId")
    policy_id: str = Field(min_length=1, alias="policyId")
    job_type: JobType = Field(alias="jobType")
    priority: int = Field(default=5, ge=1, le=10)
    metadata: Optional[dict[str, Any]] = None


class JobFilters(BaseModel):
    status: Optional[JobStatus] = None
    type: Optional[JobType] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)


class JobStatusView(BaseModel):
    id: UUID
    status: JobStatus
    progress: int = 0
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    can_cancel: bool = False


class PagedJobs(BaseModel):
    data: list[JobStatusView]
    has_next_page: bool
