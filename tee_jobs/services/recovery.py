import logging
from typing import Optional

from tee_jobs.api.v1.metrics import RECOVERY_OUTCOMES
from tee_jobs.db.models import Job
from tee_jobs.db.repository import JobRepository
from tee_jobs.domain.errors import QueueError, DuplicateJobError
from tee_jobs.domain.models import RecoveryReport
from tee_jobs.domain.states import JobStatus, JobEvent
from tee_jobs.queue.adapter import QueueAdapter
from tee_jobs.services.producer import queue_payload, dedup_key_for
from tee_jobs.settings import settings
from tee_jobs.utils.timeutils import utcnow, as_utc

logger = logging.getLogger(__name__)

REQUEUED = "requeued"
FAILED = "failed"
SKIPPED = "skipped"
ERROR = "error"


class JobRecovery:
    """
    Repairs jobs left in PROCESSING by a crashed or wedged worker.

    A job counts as stuck once its ``started_at`` is older than the stuck timeout.
    If the queue still holds an active lease for it, the engine is still in charge
    and the job is left alone. Otherwise it is requeued on a fresh entry while
    attempts remain, or failed for good.
    """

    def __init__(self, jobs: JobRepository, queue: QueueAdapter, stuck_timeout_minutes: Optional[int] = None):
        self.jobs = jobs
        self.queue = queue
        self.stuck_timeout_minutes = stuck_timeout_minutes or settings.STUCK_JOB_TIMEOUT_MINUTES

    async def recover_stuck_jobs(self) -> RecoveryReport:
        """Scheduled entry point. Never raises."""
        try:
            return await self._recover_all()
        except Exception as e:
            logger.error(f"Stuck job recovery failed: {e}", exc_info=True)
            return RecoveryReport()

    async def trigger_manual_recovery(self) -> RecoveryReport:
        logger.info("Manual stuck job recovery triggered")
        return await self._recover_all()

    async def _recover_all(self) -> RecoveryReport:
        stuck = await self.jobs.find_stuck_jobs(self.stuck_timeout_minutes)
        report = RecoveryReport(total_stuck_jobs=len(stuck))
        if not stuck:
            return report

        logger.warning(f"Found {len(stuck)} jobs stuck in processing for more than {self.stuck_timeout_minutes} minutes")
        for job in stuck:
            try:
                outcome = await self.recover_job(job)
            except Exception as e:
                logger.error(f"Failed to recover job {job.id}: {e}", exc_info=True)
                outcome = ERROR

            RECOVERY_OUTCOMES.labels(outcome=outcome).inc()
            if outcome == REQUEUED:
                report.recovered_count += 1
            elif outcome == SKIPPED:
                report.skipped_count += 1
            else:
                report.failed_count += 1

        logger.info(
            f"Recovery finished: {report.recovered_count} requeued, {report.failed_count} failed, "
            f"{report.skipped_count} skipped of {report.total_stuck_jobs}"
        )
        return report

    async def recover_job(self, job: Job) -> str:
        if job.queue_job_id is not None:
            try:
                entry = await self.queue.status(job.queue_job_id)
            except QueueError:
                # Unknown counts as not active
                entry = None
            if entry is not None and entry.is_active:
                logger.info(f"Job {job.id} still holds an active queue lease, skipping")
                return SKIPPED

        if job.attempts >= job.max_attempts:
            reason = (
                f"Job exceeded maximum attempts ({job.max_attempts}) and was stuck "
                f"for more than {self.stuck_timeout_minutes} minutes"
            )
            return FAILED if await self._fail(job, reason) else SKIPPED

        if job.queue_job_id is not None:
            # Frees the singleton key for the replacement entry
            await self.queue.cancel(job.queue_job_id)

        try:
            entry_id = await self.queue.enqueue(
                queue_payload(job),
                dedup_key=dedup_key_for(job),
                priority=job.priority,
            )
        except (QueueError, DuplicateJobError) as e:
            return FAILED if await self._fail(job, f"Recovery requeue failed: {e}") else SKIPPED

        stuck_minutes = int((utcnow() - as_utc(job.started_at)).total_seconds() // 60)
        requeued = await self.jobs.transition(
            job.id,
            JobStatus.QUEUED,
            allowed_from=[JobStatus.PROCESSING],
            conditions=[Job.started_at == job.started_at, Job.attempts == job.attempts],
            event=JobEvent.RECOVERED,
            event_meta={
                "previous_worker_id": job.worker_id,
                "previous_queue_job_id": str(job.queue_job_id) if job.queue_job_id else None,
                "queue_job_id": str(entry_id),
            },
            queue_job_id=entry_id,
            worker_id=None,
            started_at=None,
            attempts=Job.attempts + 1,
            attempt_reserved=True,
            error_message=f"Job recovered from stuck state after {stuck_minutes} minutes",
        )
        if requeued is None:
            logger.info(f"Job {job.id} changed while being recovered, withdrawing entry {entry_id}")
            await self.queue.cancel(entry_id)
            return SKIPPED

        logger.info(f"Requeued stuck job {job.id} as entry {entry_id} (attempt {requeued.attempts}/{job.max_attempts})")
        return REQUEUED

    async def _fail(self, job: Job, reason: str) -> bool:
        failed = await self.jobs.transition(
            job.id,
            JobStatus.FAILED,
            allowed_from=[JobStatus.PROCESSING],
            conditions=[Job.started_at == job.started_at],
            event=JobEvent.FAILED,
            event_meta={"reason": "stuck", "worker_id": job.worker_id},
            error_message=reason,
            failed_at=utcnow(),
            completed_at=None,
            worker_id=None,
            started_at=None,
        )
        if failed is None:
            logger.info(f"Job {job.id} changed while being failed by recovery, leaving it")
            return False
        logger.warning(f"Marked stuck job {job.id} as failed: {reason}")
        return True
