import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from tee_jobs.domain.errors import QueueError
from tee_jobs.domain.models import PayloadRefs, ProcessorResult, QueueDepth, ThroughputReport
from tee_jobs.domain.states import JobStatus, JobType
from tee_jobs.scheduler.service import PeriodicTask, SchedulerService
from tee_jobs.services.monitor import JobMonitor
from tee_jobs.settings import settings
from tee_jobs.utils.timeutils import utcnow

from conftest import USER_ID, make_request


class StubQueue:
    def __init__(self, depth=None, error=None):
        self.depth = depth or QueueDepth()
        self.error = error

    async def queue_depth(self):
        if self.error:
            raise self.error
        return self.depth


@pytest.fixture
def monitor(jobs, queue, recovery) -> JobMonitor:
    return JobMonitor(jobs, queue, recovery)


async def completed_job(jobs, seconds: float, completed_days_ago: int = 0):
    job = await jobs.create(user_id=USER_ID, job_type=JobType.EMBEDDING, refs=PayloadRefs(str(uuid4()), "f", "p"))
    await jobs.claim_for_processing(job.id, uuid4(), "w1")
    finished = utcnow() - timedelta(days=completed_days_ago)
    await jobs.update(job.id, last_started_at=finished - timedelta(seconds=seconds))
    await jobs.transition(job.id, JobStatus.COMPLETED, allowed_from=[JobStatus.PROCESSING], completed_at=finished)
    return job


async def test_backlog_without_workers_is_unhealthy(jobs, recovery):
    monitor = JobMonitor(jobs, StubQueue(QueueDepth(pending=250, active=0)), recovery)

    health = await monitor.get_queue_health()

    assert health.queue_size == 250
    assert health.processing == 0
    assert health.average_processing_time == 180
    assert health.estimated_wait_time == 63 * 180
    assert health.is_healthy is False


async def test_empty_queue_is_healthy(monitor):
    health = await monitor.get_queue_health()

    assert health.queue_size == 0
    assert health.estimated_wait_time == 0
    assert health.average_processing_time == settings.DEFAULT_AVERAGE_PROCESSING_SECONDS
    assert health.is_healthy is True


async def test_backlog_with_active_workers_is_healthy(jobs, recovery):
    monitor = JobMonitor(jobs, StubQueue(QueueDepth(pending=10, active=2)), recovery)

    health = await monitor.get_queue_health()

    assert health.processing == 2
    assert health.is_healthy is True


async def test_average_comes_from_recent_completions(monitor, jobs, user):
    await completed_job(jobs, seconds=80)
    await completed_job(jobs, seconds=120)

    health = await monitor.get_queue_health()

    assert health.average_processing_time == pytest.approx(100, abs=1)


async def test_unreachable_queue_counts_as_empty(jobs, recovery):
    monitor = JobMonitor(jobs, StubQueue(error=QueueError("down")), recovery)

    health = await monitor.get_queue_health()

    assert health.queue_size == 0
    assert health.is_healthy is True


async def test_cleanup_removes_old_completed_jobs(monitor, jobs, user):
    old = await completed_job(jobs, seconds=5, completed_days_ago=settings.COMPLETED_JOB_RETENTION_DAYS + 1)
    recent = await completed_job(jobs, seconds=5)

    assert await monitor.cleanup_completed_jobs() == 1
    assert await jobs.find_by_id(old.id) is None
    assert await jobs.find_by_id(recent.id) is not None


async def test_hourly_report(monitor, producer, processor, poll, user):
    await producer.submit(USER_ID, make_request("b1"))
    await poll()
    processor.outcome = lambda refs: ProcessorResult(status="error", message="bad blob")
    await producer.submit(USER_ID, make_request("b2"))
    await poll()
    await producer.submit(USER_ID, make_request("b3"))

    report = await monitor.generate_hourly_report()

    assert report.completed == 1
    assert report.failed == 1
    assert report.total_processed == 2
    assert report.success_rate == 50.0
    assert report.pending == 1
    assert report.processing == 0


def test_report_timestamp_is_utc():
    report = ThroughputReport(completed=1, failed=0, success_rate=100.0, pending=0, processing=0)

    assert report.generated_at.utcoffset() == timedelta(0)


async def test_log_queue_metrics_returns_health(monitor):
    health = await monitor.log_queue_metrics()

    assert health.is_healthy is True


async def test_schedule_registers_tasks(monitor, session_factory):
    scheduler = SchedulerService(session_factory)

    monitor.schedule(scheduler)

    tasks = {task.name: task for task in scheduler.tasks}
    assert set(tasks) == {"cleanup-completed-jobs", "recover-stuck-jobs", "log-queue-metrics", "hourly-report"}
    assert tasks["cleanup-completed-jobs"].leadership is not None
    assert tasks["recover-stuck-jobs"].leadership is not None
    assert tasks["recover-stuck-jobs"].initial_delay == settings.RECOVERY_STARTUP_DELAY_SECONDS
    assert tasks["log-queue-metrics"].leadership is None


async def test_failing_task_does_not_stop_others(session_factory):
    scheduler = SchedulerService(session_factory)
    ran = []

    async def broken():
        raise RuntimeError("boom")

    async def healthy():
        ran.append(True)

    failing = scheduler.add_task("broken", broken, 60)
    working = scheduler.add_task("healthy", healthy, 60, leader_only=True)

    assert await failing.run_once() is False
    assert await working.run_once() is True
    assert ran == [True]
    await scheduler.stop()


async def test_periodic_task_loops_until_stopped():
    calls = []
    done = asyncio.Event()

    async def tick():
        calls.append(True)
        if len(calls) >= 3:
            done.set()

    task = PeriodicTask("tick", tick, interval=0.01, initial_delay=0)
    await task.start()
    await asyncio.wait_for(done.wait(), timeout=5)
    await task.stop()

    assert len(calls) >= 3
    assert task.running is False
