import logging
import math
from datetime import timedelta

from tee_jobs.api.v1.metrics import QUEUE_DEPTH, QUEUE_HEALTHY, CLEANUP_REMOVED
from tee_jobs.db.repository import JobRepository
from tee_jobs.domain.errors import QueueError
from tee_jobs.domain.models import QueueHealth, QueueDepth, RecoveryReport, ThroughputReport
from tee_jobs.domain.states import JobStatus
from tee_jobs.queue.adapter import QueueAdapter
from tee_jobs.scheduler.service import SchedulerService
from tee_jobs.services.recovery import JobRecovery
from tee_jobs.settings import settings
from tee_jobs.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

AVERAGE_WINDOW = timedelta(hours=24)
AVERAGE_SAMPLE_SIZE = 500


class JobMonitor:
    def __init__(self, jobs: JobRepository, queue: QueueAdapter, recovery: JobRecovery):
        self.jobs = jobs
        self.queue = queue
        self.recovery = recovery

    def schedule(self, scheduler: SchedulerService):
        """Registers the monitor's periodic tasks. Cleanup and recovery run on the leader only."""
        scheduler.add_task(
            "cleanup-completed-jobs",
            self.cleanup_completed_jobs,
            settings.CLEANUP_INTERVAL_SECONDS,
            leader_only=True,
        )
        scheduler.add_task(
            "recover-stuck-jobs",
            self.recover_stuck_jobs,
            settings.RECOVERY_INTERVAL_SECONDS,
            initial_delay=settings.RECOVERY_STARTUP_DELAY_SECONDS,
            leader_only=True,
        )
        scheduler.add_task(
            "log-queue-metrics",
            self.log_queue_metrics,
            settings.METRICS_LOG_INTERVAL_SECONDS,
        )
        scheduler.add_task(
            "hourly-report",
            self.generate_hourly_report,
            settings.REPORT_INTERVAL_SECONDS,
        )

    async def get_queue_health(self) -> QueueHealth:
        """
        Health snapshot combining job store counts with the engine's own depth:

            queue_size          = pending jobs + pending entries
            processing          = processing jobs + active entries
            estimated_wait_time = ceil(queue_size / concurrency) * average
            is_healthy          = queue_size < high water mark
                                  and (queue_size == 0 or processing > 0)
        """
        pending = await self.jobs.count_by_status(JobStatus.PENDING)
        processing = await self.jobs.count_by_status(JobStatus.PROCESSING)

        try:
            depth = await self.queue.queue_depth()
        except QueueError as e:
            logger.warning(f"Queue depth unavailable, using job store counts only: {e}")
            depth = QueueDepth()

        queue_size = pending + depth.pending
        processing_total = processing + depth.active

        average = await self.jobs.average_processing_seconds(
            since=utcnow() - AVERAGE_WINDOW, sample_size=AVERAGE_SAMPLE_SIZE
        )
        if average is None:
            average = float(settings.DEFAULT_AVERAGE_PROCESSING_SECONDS)

        if queue_size > 0:
            estimated_wait = math.ceil(queue_size / settings.QUEUE_ASSUMED_CONCURRENCY) * average
        else:
            estimated_wait = 0.0

        is_healthy = queue_size < settings.QUEUE_HIGH_WATER_MARK and (queue_size == 0 or processing_total > 0)

        QUEUE_DEPTH.labels(state="pending").set(depth.pending)
        QUEUE_DEPTH.labels(state="active").set(depth.active)
        QUEUE_HEALTHY.set(1 if is_healthy else 0)

        return QueueHealth(
            queue_size=queue_size,
            processing=processing_total,
            average_processing_time=average,
            estimated_wait_time=estimated_wait,
            is_healthy=is_healthy,
            last_updated=utcnow(),
        )

    async def cleanup_completed_jobs(self) -> int:
        removed = await self.jobs.remove_old_completed_jobs(settings.COMPLETED_JOB_RETENTION_DAYS)
        if removed:
            CLEANUP_REMOVED.inc(removed)
            logger.info(f"Cleaned up {removed} completed jobs older than {settings.COMPLETED_JOB_RETENTION_DAYS} days")
        return removed

    async def recover_stuck_jobs(self) -> RecoveryReport:
        return await self.recovery.recover_stuck_jobs()

    async def log_queue_metrics(self) -> QueueHealth:
        health = await self.get_queue_health()
        logger.info(
            f"Queue health: size={health.queue_size} processing={health.processing} "
            f"avg={health.average_processing_time:.1f}s wait={health.estimated_wait_time:.1f}s "
            f"healthy={health.is_healthy}"
        )
        if health.queue_size > settings.QUEUE_WARN_SIZE:
            logger.warning(f"Queue backlog is high: {health.queue_size} jobs waiting")
        if health.queue_size > 0 and health.processing == 0:
            logger.error(f"{health.queue_size} jobs waiting but none are processing; are workers running?")
        return health

    async def generate_hourly_report(self) -> ThroughputReport:
        since = utcnow() - timedelta(hours=1)
        completed = await self.jobs.count_finished_since(JobStatus.COMPLETED, since)
        failed = await self.jobs.count_finished_since(JobStatus.FAILED, since)
        total = completed + failed

        report = ThroughputReport(
            completed=completed,
            failed=failed,
            success_rate=(completed / total * 100) if total else 0.0,
            pending=await self.jobs.count_by_status(JobStatus.PENDING)
            + await self.jobs.count_by_status(JobStatus.QUEUED),
            processing=await self.jobs.count_by_status(JobStatus.PROCESSING),
            generated_at=utcnow(),
        )
        logger.info(
            f"Hourly report: {report.completed} completed, {report.failed} failed "
            f"({report.success_rate:.1f}% success), {report.pending} waiting, {report.processing} processing"
        )
        return report
