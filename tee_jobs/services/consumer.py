import asyncio
import logging
import time
from typing import Any, Optional
from uuid import UUID

from tee_jobs.api.v1.metrics import JOB_COMPLETE_TOTAL, JOB_DURATION, JOBS_INFLIGHT
from tee_jobs.db.models import Job
from tee_jobs.db.repository import JobRepository
from tee_jobs.domain.errors import BatchProcessingError
from tee_jobs.domain.models import BatchItemResult, QueueEntrySnapshot, ProcessorResult
from tee_jobs.domain.payload import encode_opaque
from tee_jobs.domain.states import JobStatus, JobEvent
from tee_jobs.queue.adapter import QueueAdapter
from tee_jobs.services.processor import Processor
from tee_jobs.settings import settings
from tee_jobs.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

BUDGET_EXHAUSTED = "attempt budget exhausted"


class JobConsumer:
    """
    Batch callback for the queue engine.

    Each delivered entry is claimed on the job row, run through the processor and
    its outcome written back. Job store writes are guarded by the entry id and this
    worker's id, so a delivery that was superseded (lease lost, recovered) can never
    overwrite a newer attempt.
    """

    def __init__(
        self,
        jobs: JobRepository,
        processor: Processor,
        worker_id: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.jobs = jobs
        self.processor = processor
        self.worker_id = worker_id or settings.WORKER_INSTANCE_ID
        self.timeout_seconds = timeout_seconds or settings.TEE_PROCESS_TIMEOUT_SECONDS

    async def register(self, queue: QueueAdapter, batch_size: Optional[int] = None) -> bool:
        return await queue.register_worker(batch_size or settings.JOB_WORKER_COUNT, self.process_batch)

    async def process_batch(self, entries: list[QueueEntrySnapshot]) -> list[BatchItemResult]:
        if not entries:
            raise ValueError("Cannot process an empty batch")

        logger.info(f"Worker {self.worker_id} processing batch of {len(entries)}")
        results = [await self._process_entry(entry) for entry in entries]

        failed = [r for r in results if not r.success]
        if len(entries) == 1:
            if failed:
                raise BatchProcessingError(failed[0].error or "Job processing failed", results)
        elif failed:
            if len(failed) == len(results):
                raise BatchProcessingError(f"All {len(results)} jobs in batch failed", results)
            logger.warning(
                f"Partial batch failure: {len(failed)}/{len(results)} jobs failed "
                f"({', '.join(str(r.job_id) for r in failed)})"
            )
        return results

    async def _process_entry(self, entry: QueueEntrySnapshot) -> BatchItemResult:
        started = time.monotonic()

        job_id = _parse_job_id(entry.data.get("customJobId"))
        if job_id is None:
            logger.error(f"Queue entry {entry.id} carries no valid job id: {entry.data.get('customJobId')!r}")
            JOB_COMPLETE_TOTAL.labels(result="failure").inc()
            return BatchItemResult(
                queue_job_id=entry.id,
                job_id=None,
                success=False,
                error="Queue entry has no valid customJobId",
            )

        job = await self.jobs.claim_for_processing(job_id, entry.id, self.worker_id)
        if job is None:
            return await self._claim_refused(entry, job_id)

        JOBS_INFLIGHT.inc()
        try:
            outcome = await self._invoke_processor(job)
        finally:
            JOBS_INFLIGHT.dec()

        duration = time.monotonic() - started
        JOB_DURATION.observe(duration)

        if outcome.ok:
            await self._mark_completed(job, entry.id, outcome.data)
            JOB_COMPLETE_TOTAL.labels(result="success").inc()
            return BatchItemResult(
                queue_job_id=entry.id,
                job_id=job_id,
                success=True,
                result=outcome.data,
                duration=duration,
            )

        error = outcome.message or "Job processing failed"
        await self._mark_failed(job, entry.id, error)
        JOB_COMPLETE_TOTAL.labels(result="failure").inc()
        return BatchItemResult(
            queue_job_id=entry.id,
            job_id=job_id,
            success=False,
            error=error,
            duration=duration,
        )

    async def _claim_refused(self, entry: QueueEntrySnapshot, job_id: UUID) -> BatchItemResult:
        job = await self.jobs.find_by_id(job_id)

        if job is None:
            logger.error(f"Job {job_id} for queue entry {entry.id} not found")
            JOB_COMPLETE_TOTAL.labels(result="failure").inc()
            return BatchItemResult(queue_job_id=entry.id, job_id=job_id, success=False, error=f"Job {job_id} not found")

        status = JobStatus(job.status)
        stale = job.queue_job_id is not None and job.queue_job_id != entry.id
        if status in (JobStatus.COMPLETED, JobStatus.CANCELLED) or stale:
            logger.info(f"Skipping entry {entry.id}: job {job_id} is {status} (current entry {job.queue_job_id})")
            JOB_COMPLETE_TOTAL.labels(result="skipped").inc()
            return BatchItemResult(queue_job_id=entry.id, job_id=job_id, success=True, skipped=True)

        if job.attempts >= job.max_attempts and not job.attempt_reserved:
            if status != JobStatus.FAILED:
                await self._mark_failed(job, entry.id, BUDGET_EXHAUSTED, owned=False)
            # FAILED is final once the budget is spent
            logger.warning(f"Job {job_id} exhausted its {job.max_attempts} attempts, dropping entry {entry.id}")
            JOB_COMPLETE_TOTAL.labels(result="skipped").inc()
            return BatchItemResult(
                queue_job_id=entry.id,
                job_id=job_id,
                success=True,
                skipped=True,
                error=BUDGET_EXHAUSTED,
            )

        # The row moved between the claim and this read; let the engine redeliver.
        JOB_COMPLETE_TOTAL.labels(result="failure").inc()
        return BatchItemResult(
            queue_job_id=entry.id,
            job_id=job_id,
            success=False,
            error=f"Job {job_id} could not be claimed in status {status}",
        )

    async def _invoke_processor(self, job: Job) -> ProcessorResult:
        try:
            return await asyncio.wait_for(
                self.processor.process(job.payload_refs, self.timeout_seconds),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Job {job.id} timed out after {self.timeout_seconds}s")
            return ProcessorResult(status="error", message=f"Processing timed out after {self.timeout_seconds}s")
        except Exception as e:
            logger.error(f"Processor raised for job {job.id}: {e}", exc_info=True)
            return ProcessorResult(status="error", message=str(e) or type(e).__name__)

    async def _mark_completed(self, job: Job, entry_id: UUID, data: Optional[dict[str, Any]]):
        try:
            updated = await self.jobs.transition(
                job.id,
                JobStatus.COMPLETED,
                allowed_from=[JobStatus.PROCESSING],
                conditions=[Job.queue_job_id == entry_id, Job.worker_id == self.worker_id],
                event=JobEvent.COMPLETED,
                event_meta={"worker_id": self.worker_id, "attempt": job.attempts},
                result_blob=encode_opaque(data),
                completed_at=utcnow(),
                failed_at=None,
                worker_id=None,
            )
        except Exception as e:
            logger.error(f"Failed to record completion of job {job.id}: {e}", exc_info=True)
            return
        if updated is None:
            logger.warning(f"Completion of job {job.id} discarded: attempt was superseded")
        else:
            logger.info(f"Job {job.id} completed")

    async def _mark_failed(self, job: Job, entry_id: UUID, error: str, owned: bool = True):
        """
        Records a failed attempt. ``owned=False`` is used when the delivery was refused
        for an exhausted budget: there is no claim of ours to guard on, only the entry.
        """
        if owned:
            allowed_from = [JobStatus.PROCESSING]
            conditions = [Job.queue_job_id == entry_id, Job.worker_id == self.worker_id]
        else:
            allowed_from = [JobStatus.QUEUED, JobStatus.PROCESSING]
            conditions = [
                Job.queue_job_id == entry_id,
                Job.attempts >= Job.max_attempts,
                Job.attempt_reserved.is_(False),
            ]
        try:
            updated = await self.jobs.transition(
                job.id,
                JobStatus.FAILED,
                allowed_from=allowed_from,
                conditions=conditions,
                event=JobEvent.FAILED,
                event_meta={"worker_id": self.worker_id, "error": error, "attempt": job.attempts},
                error_message=error,
                failed_at=utcnow(),
                completed_at=None,
                worker_id=None,
            )
        except Exception as e:
            logger.error(f"Failed to record failure of job {job.id}: {e}", exc_info=True)
            return
        if updated is None:
            logger.warning(f"Failure of job {job.id} discarded: attempt was superseded")
        else:
            logger.info(f"Job {job.id} failed: {error}")

    async def get_processing_stats(self) -> dict[str, float]:
        completed = await self.jobs.count_by_status(JobStatus.COMPLETED)
        failed = await self.jobs.count_by_status(JobStatus.FAILED)
        total = completed + failed
        average = await self.jobs.average_processing_seconds()
        return {
            "total_processed": total,
            "average_processing_time": average or 0.0,
            "success_rate": (completed / total * 100) if total else 0.0,
        }


def _parse_job_id(value: Any) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    if not isinstance(value, str):
        return None
    try:
        return UUID(value)
    except ValueError:
        return None
