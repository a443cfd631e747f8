import logging
import math
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from tee_jobs.api.v1.metrics import JOB_SUBMISSIONS
from tee_jobs.db.models import Job
from tee_jobs.db.repository import JobRepository, UserDirectory
from tee_jobs.domain.errors import (
    DuplicateJobError,
    JobNotFoundError,
    NotCancellableError,
    QueueError,
    UserNotFoundError,
)
from tee_jobs.domain.models import PayloadRefs
from tee_jobs.domain.payload import build_dedup_key
from tee_jobs.domain.schemas import JobCreateRequest, JobFilters, JobStatusView, PagedJobs
from tee_jobs.domain.states import JobStatus, JobType, JobEvent, CANCELLABLE_STATUSES
from tee_jobs.queue.adapter import QueueAdapter
from tee_jobs.settings import settings
from tee_jobs.utils.timeutils import utcnow, as_utc

logger = logging.getLogger(__name__)

BASE_SECONDS_PER_MB = 30
TYPE_MULTIPLIERS = {
    JobType.REFINEMENT: 1.5,
    JobType.EMBEDDING: 1.2,
    JobType.BOTH: 2.0,
}
# Payload size is unknown at status time; estimates assume 1 MiB.
DEFAULT_DATA_SIZE = 1024 * 1024

PROGRESS = {
    JobStatus.PENDING: 0,
    JobStatus.QUEUED: 0,
    JobStatus.PROCESSING: 50,
    JobStatus.COMPLETED: 100,
    JobStatus.FAILED: 0,
    JobStatus.CANCELLED: 0,
}


def estimate_processing_time(data_size: int, job_type: str) -> float:
    """Rough processing time in seconds for ``data_size`` bytes of work."""
    size_mb = max(math.ceil(data_size / (1024 * 1024)), 1)
    multiplier = TYPE_MULTIPLIERS.get(job_type, 1.0)
    return BASE_SECONDS_PER_MB * size_mb * multiplier


def normalized_payload(job: Job) -> dict[str, Any]:
    """The part of a job that identifies duplicate work. Excludes id and priority."""
    return {
        "type": job.type,
        "blobId": job.blob_id,
        "onchainFileId": job.onchain_file_id,
        "policyId": job.policy_id,
        "metadata": job.job_metadata,
    }


def dedup_key_for(job: Job) -> str:
    return build_dedup_key(job.user_id, normalized_payload(job))


def queue_payload(job: Job) -> dict[str, Any]:
    return {
        "userId": job.user_id,
        "customJobId": str(job.id),
        "blobId": job.blob_id,
        "onchainFileId": job.onchain_file_id,
        "policyId": job.policy_id,
        "jobType": job.type,
        "priority": job.priority,
        "metadata": job.job_metadata,
    }


class JobProducer:
    def __init__(self, jobs: JobRepository, users: UserDirectory, queue: QueueAdapter):
        self.jobs = jobs
        self.users = users
        self.queue = queue

    async def submit(self, user_id: str, request: JobCreateRequest) -> UUID:
        """
        Persists a new job and hands it to the queue.

        All-or-nothing for the caller: if the queue refuses the entry (duplicate
        in flight, or any queue failure) the row is removed again before raising.
        """
        user = await self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        job = await self.jobs.create(
            user_id=user_id,
            job_type=request.job_type,
            refs=PayloadRefs(
                blob_id=request.blob_id,
                onchain_file_id=request.onchain_file_id,
                policy_id=request.policy_id,
            ),
            priority=request.priority,
            metadata=request.metadata,
            max_attempts=settings.JOB_MAX_RETRIES,
        )
        dedup_key = dedup_key_for(job)

        try:
            entry_id = await self.queue.enqueue(
                queue_payload(job),
                dedup_key=dedup_key,
                priority=job.priority,
            )
        except DuplicateJobError:
            await self.jobs.hard_delete(job.id)
            JOB_SUBMISSIONS.labels(job_type=job.type, result="duplicate").inc()
            logger.info(f"Rejected duplicate submission from user {user_id} (key {dedup_key})")
            raise
        except Exception as e:
            await self.jobs.hard_delete(job.id)
            JOB_SUBMISSIONS.labels(job_type=job.type, result="error").inc()
            logger.error(f"Failed to enqueue job {job.id}: {e}")
            if isinstance(e, QueueError):
                raise
            raise QueueError(f"Failed to enqueue job: {e}") from e

        queued = await self.jobs.transition(
            job.id,
            JobStatus.QUEUED,
            allowed_from=[JobStatus.PENDING],
            event=JobEvent.QUEUED,
            event_meta={"queue_job_id": str(entry_id)},
            queue_job_id=entry_id,
        )
        if queued is None:
            # A worker got there first; its claim already recorded the entry.
            logger.debug(f"Job {job.id} left pending before it could be marked queued")

        JOB_SUBMISSIONS.labels(job_type=job.type, result="accepted").inc()
        logger.info(f"Created job {job.id} for user {user_id} (entry {entry_id})")
        return job.id

    async def get_status(self, job_id: UUID, user_id: str) -> JobStatusView:
        job = await self.jobs.find_by_id_and_user_id(job_id, user_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return self._to_view(job)

    async def list_jobs(self, user_id: str, filters: JobFilters) -> PagedJobs:
        jobs = await self.jobs.find_all_with_pagination(
            user_id=user_id,
            status=filters.status,
            job_type=filters.type,
            page=filters.page,
            limit=filters.limit,
        )
        total = await self.jobs.count(user_id=user_id, status=filters.status, job_type=filters.type)
        return PagedJobs(
            data=[self._to_view(job) for job in jobs],
            has_next_page=filters.page * filters.limit < total,
        )

    async def cancel(self, job_id: UUID, user_id: str) -> bool:
        job = await self.jobs.find_by_id_and_user_id(job_id, user_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status not in CANCELLABLE_STATUSES:
            raise NotCancellableError(job_id, job.status)

        if job.queue_job_id is not None:
            if not await self.queue.cancel(job.queue_job_id):
                logger.warning(f"Queue entry {job.queue_job_id} of job {job_id} was not cancelled")

        try:
            cancelled = await self.jobs.transition(
                job_id,
                JobStatus.CANCELLED,
                allowed_from=CANCELLABLE_STATUSES,
                event=JobEvent.CANCELLED,
                event_meta={"user_id": user_id},
                completed_at=utcnow(),
                worker_id=None,
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to cancel job {job_id}: {e}", exc_info=True)
            return False

        if cancelled is None:
            current = await self.jobs.find_by_id(job_id)
            raise NotCancellableError(job_id, current.status if current else "unknown")

        logger.info(f"Cancelled job {job_id}")
        return True

    async def latest_completed(self, user_id: str) -> Optional[datetime]:
        job = await self.jobs.find_latest_completed_by_user_id(user_id)
        return as_utc(job.completed_at) if job else None

    def _to_view(self, job: Job) -> JobStatusView:
        status = JobStatus(job.status)
        return JobStatusView(
            id=job.id,
            status=status,
            progress=PROGRESS[status],
            result=job.result,
            error=job.error_message,
            created_at=as_utc(job.created_at),
            started_at=as_utc(job.started_at),
            completed_at=as_utc(job.completed_at or job.failed_at),
            estimated_completion=self._estimate_completion(job, status),
            can_cancel=status in CANCELLABLE_STATUSES,
        )

    @staticmethod
    def _estimate_completion(job: Job, status: JobStatus) -> Optional[datetime]:
        if status == JobStatus.PROCESSING and job.started_at:
            seconds = estimate_processing_time(DEFAULT_DATA_SIZE, job.type)
            return as_utc(job.started_at) + timedelta(seconds=seconds)
        if status in CANCELLABLE_STATUSES:
            return utcnow() + timedelta(seconds=settings.DEFAULT_AVERAGE_PROCESSING_SECONDS)
        return None
