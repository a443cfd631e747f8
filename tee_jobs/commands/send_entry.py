from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tee_jobs.db.models import QueueEntry
from tee_jobs.domain.models import EnqueueOptions
from tee_jobs.domain.states import QueueEntryState, IN_FLIGHT_ENTRY_STATES
from tee_jobs.utils.timeutils import utcnow


async def send_entry(
    session: AsyncSession,
    name: str,
    data: dict[str, Any],
    options: EnqueueOptions,
) -> Optional[QueueEntry]:
    """
    Inserts a new queue entry.

    Returns None when an in-flight entry with the same singleton key already exists.
    Two concurrent senders can both pass the pre-check; the partial unique index then
    rejects the second insert with an IntegrityError on flush, which the caller maps
    to the same outcome.
    """
    now = utcnow()

    if options.singleton_key:
        stmt = select(QueueEntry.id).where(
            QueueEntry.name == name,
            QueueEntry.singleton_key == options.singleton_key,
            QueueEntry.state.in_(IN_FLIGHT_ENTRY_STATES),
        ).limit(1)
        if await session.scalar(stmt) is not None:
            return None

    entry = QueueEntry(
        name=name,
        data=data,
        state=QueueEntryState.CREATED,
        priority=options.priority,
        retry_limit=options.retry_limit,
        retry_count=0,
        retry_delay=options.retry_delay,
        retry_backoff=options.retry_backoff,
        start_after=now,
        expire_in_seconds=options.expire_in_seconds,
        singleton_key=options.singleton_key,
        created_on=now,
        keep_until=now + timedelta(seconds=options.keep_until_seconds),
    )
    session.add(entry)
    await session.flush()
    return entry
