"""
Job Store access.

Every status change goes through ``JobRepository.transition`` (or the claim helper
built the same way): a single conditional ``UPDATE ... WHERE id = :id AND status IN
(...) RETURNING`` in its own transaction, so concurrent writers can never observe or
produce an out-of-order transition. The event log row is written in the same
transaction.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Sequence
from uuid import UUID

from sqlalchemy import select, update, delete, func, and_, or_, case
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tee_jobs.db.models import Job, JobEventLog, User
from tee_jobs.domain.errors import InvalidJobStateError
from tee_jobs.domain.models import PayloadRefs
from tee_jobs.domain.payload import encode_opaque
from tee_jobs.domain.states import JobStatus, JobType, JobEvent, can_transition
from tee_jobs.utils.timeutils import utcnow, as_utc

logger = logging.getLogger(__name__)


class JobRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(
        self,
        *,
        user_id: str,
        job_type: JobType,
        refs: PayloadRefs,
        priority: int = 5,
        metadata: Optional[dict[str, Any]] = None,
        max_attempts: int = 3,
    ) -> Job:
        async with self.session_factory() as session:
            async with session.begin():
                job = Job(
                    user_id=user_id,
                    type=job_type,
                    status=JobStatus.PENDING,
                    priority=priority,
                    blob_id=refs.blob_id,
                    onchain_file_id=refs.onchain_file_id,
                    policy_id=refs.policy_id,
                    metadata_blob=encode_opaque(metadata),
                    attempts=0,
                    max_attempts=max_attempts,
                )
                session.add(job)
                await session.flush()
                session.add(JobEventLog(job_id=job.id, event_type=JobEvent.CREATED, meta={"user_id": user_id}))
            return job

    async def find_by_id(self, job_id: UUID) -> Optional[Job]:
        async with self.session_factory() as session:
            stmt = select(Job).where(Job.id == job_id, Job.deleted_at.is_(None))
            return await session.scalar(stmt)

    async def find_by_id_and_user_id(self, job_id: UUID, user_id: str) -> Optional[Job]:
        async with self.session_factory() as session:
            stmt = select(Job).where(Job.id == job_id, Job.user_id == user_id, Job.deleted_at.is_(None))
            return await session.scalar(stmt)

    async def find_all_with_pagination(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        page: int = 1,
        limit: int = 10,
    ) -> list[Job]:
        stmt = (
            select(Job)
            .where(*self._filters(user_id, status, job_type))
            .order_by(Job.created_at.desc(), Job.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        async with self.session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def count(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
    ) -> int:
        stmt = select(func.count()).select_from(Job).where(*self._filters(user_id, status, job_type))
        async with self.session_factory() as session:
            return (await session.scalar(stmt)) or 0

    async def find_stuck_jobs(self, timeout_minutes: int) -> list[Job]:
        cutoff = utcnow() - timedelta(minutes=timeout_minutes)
        stmt = (
            select(Job)
            .where(
                Job.status == JobStatus.PROCESSING,
                Job.started_at < cutoff,
                Job.deleted_at.is_(None),
            )
            .order_by(Job.started_at.asc())
        )
        async with self.session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def count_by_status(self, status: JobStatus) -> int:
        return await self.count(status=status)

    async def count_finished_since(self, status: JobStatus, since: datetime) -> int:
        """Counts COMPLETED or FAILED jobs whose terminal timestamp falls after ``since``."""
        column = Job.failed_at if status == JobStatus.FAILED else Job.completed_at
        stmt = select(func.count()).select_from(Job).where(
            Job.status == status,
            column >= since,
            Job.deleted_at.is_(None),
        )
        async with self.session_factory() as session:
            return (await session.scalar(stmt)) or 0

    async def average_processing_seconds(
        self, since: Optional[datetime] = None, sample_size: int = 500
    ) -> Optional[float]:
        # Durations are computed client side; interval arithmetic differs per dialect.
        filters = [
            Job.status == JobStatus.COMPLETED,
            Job.completed_at.is_not(None),
            Job.last_started_at.is_not(None),
            Job.deleted_at.is_(None),
        ]
        if since is not None:
            filters.append(Job.completed_at >= since)
        stmt = (
            select(Job.last_started_at, Job.completed_at)
            .where(*filters)
            .order_by(Job.completed_at.desc())
            .limit(sample_size)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        durations = [
            (as_utc(completed) - as_utc(started)).total_seconds()
            for started, completed in rows
        ]
        durations = [d for d in durations if d >= 0]
        if not durations:
            return None
        return sum(durations) / len(durations)

    async def find_latest_completed_by_user_id(self, user_id: str) -> Optional[Job]:
        stmt = (
            select(Job)
            .where(Job.user_id == user_id, Job.status == JobStatus.COMPLETED, Job.deleted_at.is_(None))
            .order_by(Job.completed_at.desc())
            .limit(1)
        )
        async with self.session_factory() as session:
            return await session.scalar(stmt)

    async def update(self, job_id: UUID, **values: Any) -> Optional[Job]:
        """Unconditional field update. Status changes must use ``transition``."""
        if "status" in values:
            raise ValueError("Use transition() to change a job's status")
        values.setdefault("updated_at", utcnow())
        stmt = update(Job).where(Job.id == job_id, Job.deleted_at.is_(None)).values(**values).returning(Job)
        async with self.session_factory() as session:
            async with session.begin():
                return (await session.execute(stmt)).scalar_one_or_none()

    async def transition(
        self,
        job_id: UUID,
        target: JobStatus,
        *,
        allowed_from: Iterable[JobStatus],
        conditions: Sequence[Any] = (),
        event: Optional[JobEvent] = None,
        event_meta: Optional[dict[str, Any]] = None,
        **values: Any,
    ) -> Optional[Job]:
        """
        Atomically moves a job to ``target`` if its current status is in ``allowed_from``
        and every extra condition holds. Returns the updated job, or None when the row
        did not qualify (missing, deleted, or already moved by someone else).
        """
        sources = [JobStatus(s) for s in allowed_from]
        for source in sources:
            if not can_transition(source, target):
                raise InvalidJobStateError(source, target)

        if target != JobStatus.PROCESSING:
            # Only a processing job carries a worker and a start time
            values.setdefault("worker_id", None)
            values.setdefault("started_at", None)

        now = utcnow()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.deleted_at.is_(None),
                Job.status.in_(sources),
                *conditions,
            )
            .values(status=target, updated_at=now, **values)
            .returning(Job)
        )
        async with self.session_factory() as session:
            async with session.begin():
                job = (await session.execute(stmt)).scalar_one_or_none()
                if job is not None and event is not None:
                    session.add(JobEventLog(job_id=job_id, event_type=event, timestamp=now, meta=event_meta or {}))
        return job

    async def claim_for_processing(self, job_id: UUID, queue_job_id: UUID, worker_id: str) -> Optional[Job]:
        """
        Claims a job for the delivery of ``queue_job_id``.

        A PENDING/QUEUED row is claimable by its own entry (or by any entry while the
        producer has not yet recorded one). A PROCESSING/FAILED row is claimable only
        by a redelivery of its current entry. No claim is possible once the attempt
        budget is spent.

        Recovery counts the attempt when it requeues a job, so the first claim after a
        recovery requeue consumes that reservation instead of incrementing again.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.deleted_at.is_(None),
                or_(Job.attempts < Job.max_attempts, Job.attempt_reserved.is_(True)),
                or_(
                    and_(
                        Job.status.in_([JobStatus.PENDING, JobStatus.QUEUED]),
                        or_(Job.queue_job_id.is_(None), Job.queue_job_id == queue_job_id),
                    ),
                    and_(
                        Job.status.in_([JobStatus.PROCESSING, JobStatus.FAILED]),
                        Job.queue_job_id == queue_job_id,
                    ),
                ),
            )
            .values(
                status=JobStatus.PROCESSING,
                started_at=now,
                last_started_at=now,
                worker_id=worker_id,
                queue_job_id=queue_job_id,
                attempts=case((Job.attempt_reserved.is_(True), Job.attempts), else_=Job.attempts + 1),
                attempt_reserved=False,
                completed_at=None,
                failed_at=None,
                updated_at=now,
            )
            .returning(Job)
        )
        async with self.session_factory() as session:
            async with session.begin():
                job = (await session.execute(stmt)).scalar_one_or_none()
                if job is not None:
                    session.add(JobEventLog(
                        job_id=job_id,
                        event_type=JobEvent.STARTED if job.attempts <= 1 else JobEvent.RETRIED,
                        timestamp=now,
                        meta={"worker_id": worker_id, "queue_job_id": str(queue_job_id), "attempt": job.attempts},
                    ))
        return job

    async def remove(self, job_id: UUID) -> None:
        """Soft delete."""
        stmt = update(Job).where(Job.id == job_id, Job.deleted_at.is_(None)).values(deleted_at=utcnow())
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(stmt)

    async def hard_delete(self, job_id: UUID) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(delete(JobEventLog).where(JobEventLog.job_id == job_id))
                await session.execute(delete(Job).where(Job.id == job_id))

    async def remove_old_completed_jobs(self, older_than_days: int) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        old_ids = (
            select(Job.id)
            .where(Job.status == JobStatus.COMPLETED, Job.completed_at < cutoff)
            .scalar_subquery()
        )
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(delete(JobEventLog).where(JobEventLog.job_id.in_(old_ids)))
                result = await session.execute(
                    delete(Job).where(Job.status == JobStatus.COMPLETED, Job.completed_at < cutoff)
                )
        return result.rowcount or 0

    @staticmethod
    def _filters(user_id: Optional[str], status: Optional[JobStatus], job_type: Optional[JobType]) -> list[Any]:
        filters = [Job.deleted_at.is_(None)]
        if user_id is not None:
            filters.append(Job.user_id == user_id)
        if status is not None:
            filters.append(Job.status == status)
        if job_type is not None:
            filters.append(Job.type == job_type)
        return filters


class UserDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_by_id(self, user_id: str) -> Optional[User]:
        async with self.session_factory() as session:
            return await session.get(User, user_id)

    async def find_by_api_key(self, api_key: str) -> Optional[User]:
        async with self.session_factory() as session:
            return await session.scalar(select(User).where(User.api_key == api_key))
