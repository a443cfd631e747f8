from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from tee_jobs.db.models import QueueEntry
from tee_jobs.domain.states import QueueEntryState
from tee_jobs.utils.timeutils import utcnow

FINISHED_ENTRY_STATES = (QueueEntryState.COMPLETED, QueueEntryState.CANCELLED, QueueEntryState.FAILED)


async def purge_entries(session: AsyncSession, name: str) -> int:
    """Deletes finished entries past their retention. Returns number deleted."""
    stmt = delete(QueueEntry).where(
        QueueEntry.name == name,
        QueueEntry.state.in_(FINISHED_ENTRY_STATES),
        QueueEntry.keep_until < utcnow(),
    )
    result = await session.execute(stmt)
    return result.rowcount or 0
