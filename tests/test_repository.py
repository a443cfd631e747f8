from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select, func

from tee_jobs.db.models import JobEventLog
from tee_jobs.domain.errors import InvalidJobStateError
from tee_jobs.domain.models import PayloadRefs
from tee_jobs.domain.states import JobStatus, JobType, JobEvent
from tee_jobs.utils.timeutils import utcnow

from conftest import USER_ID, backdate_start

REFS = PayloadRefs(blob_id="b1", onchain_file_id="f1", policy_id="p1")


async def create_job(jobs, **kwargs):
    params = {"user_id": USER_ID, "job_type": JobType.REFINEMENT, "refs": REFS}
    params.update(kwargs)
    return await jobs.create(**params)


async def event_types(session_factory, job_id):
    async with session_factory() as session:
        stmt = select(JobEventLog.event_type).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id)
        return list((await session.scalars(stmt)).all())


async def test_create_starts_pending(jobs, user, session_factory):
    job = await create_job(jobs, metadata={"source": "upload"}, max_attempts=3)

    stored = await jobs.find_by_id(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.attempts == 0
    assert stored.max_attempts == 3
    assert stored.job_metadata == {"source": "upload"}
    assert stored.payload_refs == REFS
    assert await event_types(session_factory, job.id) == [JobEvent.CREATED]


async def test_transition_is_conditional(jobs, user, session_factory):
    job = await create_job(jobs)
    entry_id = uuid4()

    first = await jobs.transition(
        job.id, JobStatus.QUEUED, allowed_from=[JobStatus.PENDING], event=JobEvent.QUEUED, queue_job_id=entry_id
    )
    second = await jobs.transition(job.id, JobStatus.QUEUED, allowed_from=[JobStatus.PENDING])

    assert first.status == JobStatus.QUEUED
    assert first.queue_job_id == entry_id
    assert second is None
    assert await event_types(session_factory, job.id) == [JobEvent.CREATED, JobEvent.QUEUED]


async def test_transition_rejects_illegal_edges(jobs, user):
    job = await create_job(jobs)

    with pytest.raises(InvalidJobStateError):
        await jobs.transition(job.id, JobStatus.CANCELLED, allowed_from=[JobStatus.PROCESSING])


async def test_status_cannot_be_changed_through_update(jobs, user):
    job = await create_job(jobs)

    with pytest.raises(ValueError):
        await jobs.update(job.id, status=JobStatus.COMPLETED)


async def test_claim_increments_attempts_until_budget(jobs, user):
    job = await create_job(jobs, max_attempts=2)
    entry_id = uuid4()

    claimed = await jobs.claim_for_processing(job.id, entry_id, "w1")
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.worker_id == "w1"
    assert claimed.attempts == 1
    assert claimed.started_at is not None

    # Redelivery of the same entry
    again = await jobs.claim_for_processing(job.id, entry_id, "w2")
    assert again.attempts == 2
    assert again.worker_id == "w2"

    assert await jobs.claim_for_processing(job.id, entry_id, "w3") is None
    assert (await jobs.find_by_id(job.id)).attempts == 2


async def test_claim_refuses_foreign_entry(jobs, user):
    job = await create_job(jobs)
    await jobs.claim_for_processing(job.id, uuid4(), "w1")

    assert await jobs.claim_for_processing(job.id, uuid4(), "w2") is None


async def test_claim_consumes_reserved_attempt(jobs, user, session_factory):
    job = await create_job(jobs, max_attempts=2)
    entry_id = uuid4()
    await jobs.claim_for_processing(job.id, uuid4(), "w1")
    await jobs.transition(
        job.id,
        JobStatus.QUEUED,
        allowed_from=[JobStatus.PROCESSING],
        queue_job_id=entry_id,
        attempts=2,
        attempt_reserved=True,
    )

    claimed = await jobs.claim_for_processing(job.id, entry_id, "w2")

    assert claimed.attempts == 2
    assert claimed.attempt_reserved is False
    assert await event_types(session_factory, job.id) == [JobEvent.CREATED, JobEvent.STARTED, JobEvent.RETRIED]
    # A redelivery after that pays for itself, and the budget is spent
    assert await jobs.claim_for_processing(job.id, entry_id, "w3") is None


async def test_leaving_processing_clears_worker_and_start(jobs, user):
    job = await create_job(jobs)
    await jobs.claim_for_processing(job.id, uuid4(), "w1")

    done = await jobs.transition(
        job.id, JobStatus.COMPLETED, allowed_from=[JobStatus.PROCESSING], completed_at=utcnow()
    )

    assert done.worker_id is None
    assert done.started_at is None
    assert done.last_started_at is not None


async def test_find_stuck_jobs_uses_started_at(jobs, user):
    stuck = await create_job(jobs)
    fresh = await create_job(jobs, refs=PayloadRefs("b2", "f2", "p2"))
    await jobs.claim_for_processing(stuck.id, uuid4(), "w1")
    await jobs.claim_for_processing(fresh.id, uuid4(), "w1")
    await backdate_start(jobs, stuck.id, minutes=30)

    found = await jobs.find_stuck_jobs(timeout_minutes=10)

    assert [job.id for job in found] == [stuck.id]


async def test_soft_deleted_jobs_are_invisible(jobs, user):
    job = await create_job(jobs)
    await jobs.remove(job.id)

    assert await jobs.find_by_id(job.id) is None
    assert await jobs.count(user_id=USER_ID) == 0


async def test_pagination_and_counts(jobs, user):
    for i in range(5):
        await create_job(jobs, refs=PayloadRefs(f"b{i}", "f", "p"))

    first_page = await jobs.find_all_with_pagination(user_id=USER_ID, page=1, limit=2)
    last_page = await jobs.find_all_with_pagination(user_id=USER_ID, page=3, limit=2)

    assert [job.blob_id for job in first_page] == ["b4", "b3"]
    assert [job.blob_id for job in last_page] == ["b0"]
    assert await jobs.count(user_id=USER_ID, status=JobStatus.PENDING) == 5
    assert await jobs.count(user_id=USER_ID, job_type=JobType.EMBEDDING) == 0


async def test_remove_old_completed_jobs(jobs, user):
    old = await create_job(jobs)
    recent = await create_job(jobs, refs=PayloadRefs("b2", "f2", "p2"))
    for job in (old, recent):
        entry_id = uuid4()
        await jobs.claim_for_processing(job.id, entry_id, "w1")
        await jobs.transition(job.id, JobStatus.COMPLETED, allowed_from=[JobStatus.PROCESSING], completed_at=utcnow())
    await jobs.update(old.id, completed_at=utcnow() - timedelta(days=8))

    removed = await jobs.remove_old_completed_jobs(older_than_days=7)

    assert removed == 1
    assert await jobs.find_by_id(old.id) is None
    assert await jobs.find_by_id(recent.id) is not None


async def test_latest_completed_by_user(jobs, user):
    assert await jobs.find_latest_completed_by_user_id(USER_ID) is None

    job = await create_job(jobs)
    await jobs.claim_for_processing(job.id, uuid4(), "w1")
    await jobs.transition(job.id, JobStatus.COMPLETED, allowed_from=[JobStatus.PROCESSING], completed_at=utcnow())

    latest = await jobs.find_latest_completed_by_user_id(USER_ID)
    assert latest.id == job.id


async def test_event_log_count(jobs, user, session_factory):
    job = await create_job(jobs)
    await jobs.claim_for_processing(job.id, uuid4(), "w1")

    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(JobEventLog).where(JobEventLog.job_id == job.id))
    assert count == 2
