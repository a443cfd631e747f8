from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tee_jobs.db.models import QueueEntry
from tee_jobs.domain.states import QueueEntryState, IN_FLIGHT_ENTRY_STATES
from tee_jobs.utils.timeutils import utcnow


async def cancel_entry(session: AsyncSession, name: str, entry_id: UUID) -> bool:
    """Cancels an in-flight entry. Returns False if it was already finished or unknown."""
    stmt = (
        update(QueueEntry)
        .where(
            QueueEntry.id == entry_id,
            QueueEntry.name == name,
            QueueEntry.state.in_(IN_FLIGHT_ENTRY_STATES),
        )
        .values(
            state=QueueEntryState.CANCELLED,
            completed_on=utcnow(),
            worker_id=None,
            expires_at=None,
        )
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0
