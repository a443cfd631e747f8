from uuid import UUID

import pytest

from tee_jobs.commands.lease_entries import lease_entries
from tee_jobs.domain.errors import QueueError
from tee_jobs.domain.states import JobStatus, QueueEntryState
from tee_jobs.services.recovery import REQUEUED, SKIPPED

from conftest import QUEUE_NAME, USER_ID, backdate_start, make_request


async def stuck_job(producer, jobs, blob_id="b1", minutes=30) -> tuple[UUID, UUID]:
    """Submits a job and leaves it PROCESSING under a worker that never reports back."""
    job_id = await producer.submit(USER_ID, make_request(blob_id))
    entry_id = (await jobs.find_by_id(job_id)).queue_job_id
    await jobs.claim_for_processing(job_id, entry_id, "dead-worker")
    await backdate_start(jobs, job_id, minutes=minutes)
    return job_id, entry_id


async def test_stuck_job_is_requeued_on_fresh_entry(producer, jobs, queue, recovery, poll, user):
    job_id, old_entry = await stuck_job(producer, jobs)

    report = await recovery.recover_stuck_jobs()

    assert report.total_stuck_jobs == 1
    assert report.recovered_count == 1
    job = await jobs.find_by_id(job_id)
    assert job.status == JobStatus.QUEUED
    assert job.attempts == 2
    assert job.worker_id is None
    assert job.started_at is None
    assert job.queue_job_id != old_entry
    assert job.error_message == "Job recovered from stuck state after 30 minutes"
    assert (await queue.status(old_entry)).state == QueueEntryState.CANCELLED
    assert (await queue.status(job.queue_job_id)).state == QueueEntryState.CREATED

    await poll()

    job = await jobs.find_by_id(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 2


async def test_recent_processing_job_is_left_alone(producer, jobs, recovery, user):
    job_id, _ = await stuck_job(producer, jobs, minutes=1)

    report = await recovery.recover_stuck_jobs()

    assert report.total_stuck_jobs == 0
    assert (await jobs.find_by_id(job_id)).status == JobStatus.PROCESSING


async def test_job_with_active_lease_is_skipped(producer, jobs, recovery, session_factory, user):
    job_id = await producer.submit(USER_ID, make_request())
    async with session_factory() as session:
        (entry,) = await lease_entries(session, QUEUE_NAME, "slow-worker")
        await session.commit()
    await jobs.claim_for_processing(job_id, entry.id, "slow-worker")
    await backdate_start(jobs, job_id)

    report = await recovery.recover_stuck_jobs()

    assert report.skipped_count == 1
    job = await jobs.find_by_id(job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.worker_id == "slow-worker"


async def test_exhausted_job_is_failed(producer, jobs, recovery, user):
    job_id, _ = await stuck_job(producer, jobs)
    await jobs.update(job_id, attempts=3)

    report = await recovery.recover_stuck_jobs()

    assert report.failed_count == 1
    job = await jobs.find_by_id(job_id)
    assert job.status == JobStatus.FAILED
    assert job.failed_at is not None
    assert job.started_at is None
    assert job.worker_id is None
    assert "exceeded maximum attempts (3)" in job.error_message


async def test_recovery_on_last_attempt_still_runs_it(producer, jobs, processor, recovery, poll, user):
    job_id, _ = await stuck_job(producer, jobs)
    await jobs.update(job_id, attempts=2)

    report = await recovery.recover_stuck_jobs()

    assert report.recovered_count == 1
    assert (await jobs.find_by_id(job_id)).attempts == 3

    assert await poll() == 1

    job = await jobs.find_by_id(job_id)
    assert len(processor.calls) == 1
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 3


async def test_worker_lost_on_every_attempt(producer, jobs, consumer, processor, recovery, poll, monkeypatch, user):
    async def lost(*args, **kwargs):
        return None

    # The worker dies after processing, before recording the outcome
    monkeypatch.setattr(consumer, "_mark_completed", lost)
    job_id = await producer.submit(USER_ID, make_request())

    for _ in range(3):
        assert await poll() == 1
        await backdate_start(jobs, job_id)
        await recovery.recover_stuck_jobs()

    job = await jobs.find_by_id(job_id)
    assert len(processor.calls) == 3
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert "exceeded maximum attempts (3)" in job.error_message
    assert await poll() == 0


async def test_requeue_failure_fails_job(producer, jobs, queue, recovery, monkeypatch, user):
    job_id, _ = await stuck_job(producer, jobs)

    async def refuse(*args, **kwargs):
        raise QueueError("queue unavailable")

    monkeypatch.setattr(queue, "enqueue", refuse)

    report = await recovery.recover_stuck_jobs()

    assert report.failed_count == 1
    job = await jobs.find_by_id(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message.startswith("Recovery requeue failed")


async def test_error_on_one_job_does_not_stop_the_rest(producer, jobs, queue, recovery, monkeypatch, user):
    first, _ = await stuck_job(producer, jobs, "b1", minutes=40)
    second, _ = await stuck_job(producer, jobs, "b2", minutes=30)
    original_status = queue.status

    async def flaky_status(entry_id):
        if entry_id == (await jobs.find_by_id(first)).queue_job_id:
            raise RuntimeError("connection reset")
        return await original_status(entry_id)

    monkeypatch.setattr(queue, "status", flaky_status)

    report = await recovery.recover_stuck_jobs()

    assert report.total_stuck_jobs == 2
    assert report.failed_count == 1
    assert report.recovered_count == 1
    assert (await jobs.find_by_id(first)).status == JobStatus.PROCESSING
    assert (await jobs.find_by_id(second)).status == JobStatus.QUEUED


async def test_concurrent_change_withdraws_new_entry(producer, jobs, queue, recovery, user):
    job_id, _ = await stuck_job(producer, jobs)
    observed = await jobs.find_by_id(job_id)
    # Another worker claims a redelivery after the observation
    await jobs.update(job_id, attempts=2)

    assert await recovery.recover_job(observed) == SKIPPED

    job = await jobs.find_by_id(job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.queue_job_id == observed.queue_job_id
    depth = await queue.queue_depth()
    assert (depth.pending, depth.active) == (0, 0)


async def test_recover_job_requeues_directly(producer, jobs, recovery, user):
    job_id, _ = await stuck_job(producer, jobs)

    assert await recovery.recover_job(await jobs.find_by_id(job_id)) == REQUEUED


async def test_scheduled_recovery_never_raises(jobs, recovery, monkeypatch):
    async def broken(timeout_minutes):
        raise RuntimeError("database is down")

    monkeypatch.setattr(jobs, "find_stuck_jobs", broken)

    report = await recovery.recover_stuck_jobs()

    assert report.total_stuck_jobs == 0
    with pytest.raises(RuntimeError):
        await recovery.trigger_manual_recovery()
