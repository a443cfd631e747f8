from typing import Any, Optional, Sequence
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from tee_jobs.db.models import QueueEntry
from tee_jobs.domain.states import QueueEntryState
from tee_jobs.utils.timeutils import utcnow


async def complete_entries(
    session: AsyncSession,
    entry_ids: Sequence[UUID],
    output: Optional[Any] = None,
) -> int:
    """
    Marks ACTIVE entries as COMPLETED.
    Entries that were cancelled or reaped in the meantime are left alone.
    Returns the number of entries completed.
    """
    if not entry_ids:
        return 0

    stmt = (
        update(QueueEntry)
        .where(
            QueueEntry.id.in_(list(entry_ids)),
            QueueEntry.state == QueueEntryState.ACTIVE,
        )
        .values(
            state=QueueEntryState.COMPLETED,
            completed_on=utcnow(),
            output=output,
        )
    )
    result = await session.execute(stmt)
    return result.rowcount or 0
