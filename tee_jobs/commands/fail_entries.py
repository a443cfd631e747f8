from datetime import datetime
from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tee_jobs.db.models import QueueEntry
from tee_jobs.domain.states import QueueEntryState
from tee_jobs.domain.retry import calculate_next_run
from tee_jobs.api.v1.metrics import QUEUE_ENTRY_FAILURES
from tee_jobs.utils.timeutils import utcnow


async def fail_entries(
    session: AsyncSession,
    entry_ids: Sequence[UUID],
    error: str,
) -> dict[UUID, QueueEntryState]:
    """
    Fails ACTIVE entries (retryable or final).
    Returns the resulting state per entry that was actually failed.
    """
    if not entry_ids:
        return {}

    stmt = (
        select(QueueEntry)
        .where(
            QueueEntry.id.in_(list(entry_ids)),
            QueueEntry.state == QueueEntryState.ACTIVE,
        )
        .with_for_update()
    )
    entries = (await session.scalars(stmt)).all()

    now = utcnow()
    outcome = {entry.id: apply_failure(entry, error, now) for entry in entries}
    await session.flush()
    return outcome


def apply_failure(entry: QueueEntry, error: str, now: datetime) -> QueueEntryState:
    """
    Moves one ACTIVE entry to RETRY while it has retries left, otherwise to FAILED.
    The next delivery is delayed per the entry's retry settings.
    """
    entry.output = {"error": error}
    entry.worker_id = None
    entry.expires_at = None

    if entry.retry_count < entry.retry_limit:
        entry.start_after = calculate_next_run(
            entry.retry_count,
            base_delay_seconds=entry.retry_delay,
            backoff=entry.retry_backoff,
            now=now,
        )
        entry.retry_count += 1
        entry.state = QueueEntryState.RETRY
        entry.started_on = None
        QUEUE_ENTRY_FAILURES.labels(type="retryable").inc()
    else:
        entry.state = QueueEntryState.FAILED
        entry.completed_on = now
        QUEUE_ENTRY_FAILURES.labels(type="final").inc()

    return entry.state
