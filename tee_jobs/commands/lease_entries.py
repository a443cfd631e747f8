import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tee_jobs.db.models import QueueEntry
from tee_jobs.domain.states import QueueEntryState, PENDING_ENTRY_STATES
from tee_jobs.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


async def lease_entries(
    session: AsyncSession,
    name: str,
    worker_id: str,
    batch_size: int = 1,
) -> list[QueueEntry]:
    """
    Atomically claims up to ``batch_size`` eligible entries of queue ``name``.

    Eligible means CREATED or RETRY with ``start_after`` in the past. Highest
    priority first, then oldest. Rows locked by another poller are skipped, so
    concurrent workers never lease the same entry. Each claimed entry becomes
    ACTIVE with a lease of ``expire_in_seconds``.
    """
    now = utcnow()

    stmt = (
        select(QueueEntry)
        .where(
            QueueEntry.name == name,
            QueueEntry.state.in_(PENDING_ENTRY_STATES),
            QueueEntry.start_after <= now,
        )
        .order_by(QueueEntry.priority.desc(), QueueEntry.created_on.asc())
        .with_for_update(skip_locked=True)
        .limit(batch_size)
    )
    entries = list((await session.scalars(stmt)).all())

    for entry in entries:
        entry.state = QueueEntryState.ACTIVE
        entry.started_on = now
        entry.expires_at = now + timedelta(seconds=entry.expire_in_seconds)
        entry.worker_id = worker_id

    if entries:
        await session.flush()
        logger.debug(f"Worker {worker_id} leased {len(entries)} entries from {name}")

    return entries
