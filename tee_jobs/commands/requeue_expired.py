import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tee_jobs.db.models import QueueEntry
from tee_jobs.domain.states import QueueEntryState
from tee_jobs.commands.fail_entries import apply_failure
from tee_jobs.api.v1.metrics import REAPER_EXPIRED_ENTRIES
from tee_jobs.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

LEASE_EXPIRED = "lease expired"


async def requeue_expired_entries(session: AsyncSession, name: str, limit: int = 100) -> int:
    """
    Finds ACTIVE entries whose lease has expired and fails them,
    which hands them back to the queue when retries remain.
    Returns number of entries reaped.
    """
    now = utcnow()

    stmt = (
        select(QueueEntry)
        .where(
            QueueEntry.name == name,
            QueueEntry.state == QueueEntryState.ACTIVE,
            QueueEntry.expires_at < now,
        )
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    expired = (await session.scalars(stmt)).all()

    if not expired:
        return 0

    for entry in expired:
        worker_id = entry.worker_id
        state = apply_failure(entry, LEASE_EXPIRED, now)
        logger.warning(f"Lease of entry {entry.id} (worker {worker_id}) expired, moved to {state}")

    REAPER_EXPIRED_ENTRIES.inc(len(expired))
    await session.flush()
    return len(expired)
